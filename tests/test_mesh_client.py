"""
임베디드 메시 클라이언트 테스트
tailscaled/tailscale 실행을 대역으로 교체하여 수명 주기 확인
"""

import json
import os
import socket
import subprocess
import threading

import pytest

from vpn_mesh_agent.errors import MeshConnectError, ProxyStartError
from vpn_mesh_agent.mesh_client import EmbeddedMeshClient, MeshClientConfig
from vpn_mesh_agent.socks5 import Socks5Proxy, recv_exact, socks5_connect

STATUS_RUNNING = {
    "BackendState": "Running",
    "Self": {"HostName": "agent-test", "TailscaleIPs": ["fd7a:115c:a1e0::5", "100.64.0.5"]},
    "Peer": {
        "a": {"HostName": "master-1", "TailscaleIPs": ["100.64.0.1"], "Online": True},
        "b": {"HostName": "worker-1", "TailscaleIPs": ["100.64.0.2"], "Online": False},
    },
}


class FakeProcess:
    """tailscaled 프로세스 대역 (SOCKS5 outlet 포함)"""

    def __init__(self, cmd):
        self.cmd = cmd
        self.pid = 4242
        self.returncode = None
        self.signals = []
        args = dict(arg.split("=", 1) for arg in cmd[1:] if "=" in arg)
        open(args["--socket"], "w").close()
        port = int(args["--socks5-server"].rsplit(":", 1)[1])
        self.outlet = Socks5Proxy(lambda host, p, timeout: socket.create_connection((host, p), timeout=timeout))
        self.outlet.start(port)

    def poll(self):
        return self.returncode

    def send_signal(self, signum):
        self.signals.append(signum)
        self.outlet.stop()
        self.returncode = 0

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        self.returncode = -9


class FakeTailscale:
    """tailscale CLI 대역"""

    def __init__(self, up_code=0, status=None):
        self.up_code = up_code
        self.status = STATUS_RUNNING if status is None else status
        self.calls = []
        self.processes = []

    def popen(self, cmd, **kwargs):
        process = FakeProcess(cmd)
        self.processes.append(process)
        return process

    def run(self, cmd, **kwargs):
        verb = cmd[2]
        self.calls.append(verb)
        if verb == "up":
            return subprocess.CompletedProcess(cmd, self.up_code, "", "" if self.up_code == 0 else "auth key expired")
        if verb == "status":
            return subprocess.CompletedProcess(cmd, 0, json.dumps(self.status), "")
        return subprocess.CompletedProcess(cmd, 0, "", "")


def make_client(tmp_path, fake, auth_key="tskey-auth-test"):
    config = MeshClientConfig(
        coordinator_url="https://headscale.example.com",
        auth_key=auth_key,
        hostname="agent-test",
        state_root=str(tmp_path / "mesh"),
    )
    return EmbeddedMeshClient("test-cluster", config, runner=fake.run, popen=fake.popen)


def test_connect_and_disconnect(tmp_path):
    """연결 후 상태 조회, 연결 해제 시 정리"""
    fake = FakeTailscale()
    client = make_client(tmp_path, fake)

    status = client.connect(timeout=5)

    assert status.connected == True
    assert status.mesh_ip == "100.64.0.5"
    assert status.peer_count == 2
    assert status.cluster_id == "test-cluster"
    assert client.saved_connection()["mesh_ip"] == "100.64.0.5"
    assert fake.calls[0] == "up"
    assert len(client.list_peers()) == 2

    client.disconnect(timeout=1)

    assert client.connected == False
    assert client.saved_connection() is None
    assert "down" in fake.calls
    assert fake.processes[0].signals


def test_up_failure_stops_daemon(tmp_path):
    """tailscale up 실패 시 MeshConnectError, 데몬 종료"""
    fake = FakeTailscale(up_code=1)
    client = make_client(tmp_path, fake)

    with pytest.raises(MeshConnectError, match="auth key expired"):
        client.connect(timeout=5)

    assert client.connected == False
    assert fake.processes[0].signals


class MissingTailscale(FakeTailscale):
    """tailscale 실행 파일이 없는 환경"""

    def run(self, cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])


def test_missing_tailscale_binary_stops_daemon(tmp_path):
    """tailscale 실행 실패(OSError)도 MeshConnectError, 데몬 종료"""
    fake = MissingTailscale()
    client = make_client(tmp_path, fake)

    with pytest.raises(MeshConnectError, match="cannot run tailscale"):
        client.connect(timeout=5)

    assert client.connected == False
    assert fake.processes[0].signals
    assert fake.processes[0].poll() is not None


def test_handshake_timeout(tmp_path):
    """Running 상태에 도달하지 못하면 타임아웃"""
    fake = FakeTailscale(status={"BackendState": "NeedsLogin"})
    client = make_client(tmp_path, fake)

    with pytest.raises(MeshConnectError, match="timed out"):
        client.connect(timeout=1)
    assert client.connected == False


def test_connect_cancelled(tmp_path):
    """취소 이벤트 설정 시 중단"""
    fake = FakeTailscale(status={"BackendState": "Starting"})
    client = make_client(tmp_path, fake)
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(MeshConnectError, match="cancelled"):
        client.connect(timeout=30, cancel_event=cancel)


def test_auth_key_required(tmp_path):
    """인증 키 없이 연결 불가"""
    client = make_client(tmp_path, FakeTailscale(), auth_key="")
    with pytest.raises(MeshConnectError):
        client.connect(timeout=1)


def test_dial_and_proxy_require_connection(tmp_path):
    """미연결 상태에서 dial/proxy 거부"""
    client = make_client(tmp_path, FakeTailscale())
    with pytest.raises(MeshConnectError):
        client.dial("100.64.0.1", 22)
    with pytest.raises(ProxyStartError):
        client.start_socks5_proxy()


def test_proxy_through_mesh(tmp_path):
    """로컬 프록시 -> 메시 outlet -> 대상 전달"""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)

    def echo_once():
        conn, _ = server.accept()
        with conn:
            conn.sendall(recv_exact(conn, 5))

    threading.Thread(target=echo_once, daemon=True).start()

    fake = FakeTailscale()
    client = make_client(tmp_path, fake)
    client.connect(timeout=5)
    try:
        port = client.start_socks5_proxy(0)
        sock = socks5_connect("127.0.0.1", port, "127.0.0.1", server.getsockname()[1], timeout=5)
        with sock:
            sock.settimeout(5)
            sock.sendall(b"mesh!")
            assert recv_exact(sock, 5) == b"mesh!"
    finally:
        client.disconnect(timeout=1)
        server.close()


def test_load_existing(tmp_path):
    """저장된 연결 정보로 상태 조회용 클라이언트 복원"""
    fake = FakeTailscale()
    client = make_client(tmp_path, fake)
    config = client.config

    assert EmbeddedMeshClient.load_existing("test-cluster", config, runner=fake.run, popen=fake.popen) is None

    client.connect(timeout=5)
    try:
        existing = EmbeddedMeshClient.load_existing("test-cluster", config, runner=fake.run, popen=fake.popen)
        assert existing is not None
        assert existing.status().mesh_ip == "100.64.0.5"
        assert existing.connected == False
    finally:
        client.disconnect(timeout=1)
