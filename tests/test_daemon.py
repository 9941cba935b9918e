"""
메시 데몬 관리 테스트
"""

import os
import threading

import pytest

from vpn_mesh_agent.daemon import DaemonController, MeshClientState, process_alive
from vpn_mesh_agent.errors import DaemonAlreadyRunningError, MeshConnectError
from vpn_mesh_agent.mesh_client import MeshStatus


class FakeMeshClient:
    """connect/disconnect 호출만 기록하는 클라이언트 대역"""

    def __init__(self, fail=False):
        self.fail = fail
        self.events = []

    def connect(self, timeout=60.0, cancel_event=None):
        self.events.append("connect")
        if self.fail:
            raise MeshConnectError("handshake timed out")
        return MeshStatus(connected=True, backend_state="Running", mesh_ip="100.64.0.5")

    def start_socks5_proxy(self, port=0):
        self.events.append("proxy_start")
        return port or 1080

    def stop_socks5_proxy(self):
        self.events.append("proxy_stop")

    def disconnect(self, timeout=10.0):
        self.events.append("disconnect")


@pytest.fixture
def controller(tmp_path):
    return DaemonController("test-cluster", state_root=str(tmp_path / "mesh"))


def test_start_and_shutdown(controller):
    """시작 후 실행 중, 종료 후 정지"""
    client = FakeMeshClient()
    status = controller.start(client, start_proxy=True, proxy_port=19050)

    assert status.mesh_ip == "100.64.0.5"
    assert controller.state == MeshClientState.RUNNING
    assert controller.is_daemon_running() == True
    assert controller.get_daemon_pid() == os.getpid()
    assert controller.saved_proxy_port() == 19050

    controller.shutdown()

    assert controller.state == MeshClientState.STOPPED
    assert controller.is_daemon_running() == False
    assert controller.saved_proxy_port() is None
    assert client.events == ["connect", "proxy_start", "proxy_stop", "disconnect"]


def test_second_start_rejected(controller, tmp_path):
    """같은 클러스터 두 번째 시작은 거부, 첫 번째 상태 유지"""
    controller.start(FakeMeshClient())

    other = DaemonController("test-cluster", state_root=str(tmp_path / "mesh"))
    second_client = FakeMeshClient()
    with pytest.raises(DaemonAlreadyRunningError) as excinfo:
        other.start(second_client)

    assert excinfo.value.pid == os.getpid()
    assert second_client.events == []
    assert controller.state == MeshClientState.RUNNING
    assert controller.is_daemon_running() == True

    controller.shutdown()


def test_lock_blocks_concurrent_start(controller, tmp_path):
    """PID 파일 기록 전이라도 잠금이 잡혀 있으면 거부"""
    controller._acquire_lock()
    try:
        other = DaemonController("test-cluster", state_root=str(tmp_path / "mesh"))
        with pytest.raises(DaemonAlreadyRunningError):
            other.start(FakeMeshClient())
    finally:
        controller._release_lock()


def test_connect_failure_cleans_up(controller):
    """연결 실패 시 파일/잠금 정리 후 예외 전달"""
    client = FakeMeshClient(fail=True)
    with pytest.raises(MeshConnectError):
        controller.start(client)

    assert controller.state == MeshClientState.STOPPED
    assert controller.is_daemon_running() == False
    assert client.events == ["connect", "proxy_stop", "disconnect"]

    controller.start(FakeMeshClient())
    controller.shutdown()


def test_shutdown_is_idempotent(controller):
    """정지 상태에서 shutdown 은 아무것도 하지 않음"""
    client = FakeMeshClient()
    controller.start(client)
    controller.shutdown()
    controller.shutdown()
    assert client.events.count("disconnect") == 1


def test_clusters_do_not_conflict(tmp_path):
    """다른 클러스터는 동시에 실행 가능"""
    a = DaemonController("alpha", state_root=str(tmp_path))
    b = DaemonController("beta", state_root=str(tmp_path))
    a.start(FakeMeshClient())
    b.start(FakeMeshClient())
    assert a.state == b.state == MeshClientState.RUNNING
    a.shutdown()
    b.shutdown()


def test_run_returns_after_stop_event(controller):
    """stop 이벤트가 설정되면 run 종료"""
    stop = threading.Event()
    client = FakeMeshClient()
    result = {}

    thread = threading.Thread(target=lambda: result.setdefault("code", controller.run(client, stop_event=stop)))
    thread.start()
    stop.set()
    thread.join(timeout=10)

    assert result["code"] == 0
    assert controller.state == MeshClientState.STOPPED
    assert "disconnect" in client.events


def test_run_reports_start_failure(controller):
    """시작 실패 시 종료 코드 1"""
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault(
        "code", controller.run(FakeMeshClient(fail=True), stop_event=threading.Event())))
    thread.start()
    thread.join(timeout=10)
    assert result["code"] == 1


def test_stale_pid_file(controller):
    """죽은 프로세스의 PID 파일은 실행 중으로 보지 않음"""
    os.makedirs(controller.state_dir, exist_ok=True)
    with open(controller.pid_file, "w") as f:
        f.write("999999999")
    assert controller.is_daemon_running() == False
    assert controller.stop_daemon() == False
    assert not os.path.exists(controller.pid_file)


def test_process_alive():
    """현재 프로세스는 살아 있음"""
    assert process_alive(os.getpid()) == True
    assert process_alive(0) == False
