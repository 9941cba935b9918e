"""
데몬 관리 모듈
임베디드 메시 클라이언트의 클러스터별 단일 인스턴스 실행, 백그라운드 분리, 시그널 기반 종료

PID 파일은 연결(및 프록시 시작)이 끝난 뒤 마지막에 기록되며 준비 완료 표시로 사용된다.
"""

import enum
import fcntl
import os
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional

from .errors import DaemonAlreadyRunningError, DaemonStartError, MeshError
from .logger import get_logger

DEFAULT_STATE_ROOT = "~/.vpn-mesh-agent/mesh"


class MeshClientState(enum.Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    RUNNING = "running"
    DISCONNECTING = "disconnecting"


def process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DaemonController:
    """클러스터별 메시 데몬 수명 주기 관리 클래스"""

    def __init__(self, cluster_id: str, state_root: str = DEFAULT_STATE_ROOT):
        self.cluster_id = cluster_id
        self.state_dir = os.path.join(os.path.expanduser(state_root), cluster_id)
        self.pid_file = os.path.join(self.state_dir, "daemon.pid")
        self.proxy_port_file = os.path.join(self.state_dir, "proxy.port")
        self.lock_path = os.path.join(self.state_dir, "daemon.lock")
        self.logger = get_logger()

        self.state = MeshClientState.STOPPED
        self.client = None
        self.proxy_port = 0
        self._lock_file = None
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------
    # 상태 파일
    # ------------------------------------------------------------------

    @staticmethod
    def _read_int(path: str) -> Optional[int]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return int(f.read().strip())
        except FileNotFoundError:
            return None
        except ValueError:
            return None

    def get_daemon_pid(self) -> Optional[int]:
        return self._read_int(self.pid_file)

    def saved_proxy_port(self) -> Optional[int]:
        return self._read_int(self.proxy_port_file)

    def is_daemon_running(self) -> bool:
        """PID 파일이 있고 기록된 프로세스가 살아 있으면 True"""
        pid = self.get_daemon_pid()
        return pid is not None and process_alive(pid)

    def _write(self, path: str, value: str):
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, path)

    def cleanup_files(self):
        for path in (self.pid_file, self.proxy_port_file):
            if os.path.exists(path):
                os.unlink(path)

    def _acquire_lock(self):
        os.makedirs(self.state_dir, mode=0o700, exist_ok=True)
        lock_file = open(self.lock_path, "a")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            raise DaemonAlreadyRunningError(self.cluster_id, self.get_daemon_pid())
        self._lock_file = lock_file

    def _release_lock(self):
        lock_file, self._lock_file = self._lock_file, None
        if lock_file is not None:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            lock_file.close()

    def _set_state(self, state: MeshClientState):
        self.logger.debug(f"Daemon state {self.state.value} -> {state.value}")
        self.state = state

    # ------------------------------------------------------------------
    # 수명 주기
    # ------------------------------------------------------------------

    def start(self, client, start_proxy: bool = False, proxy_port: int = 0,
              connect_timeout: float = 60.0, cancel_event: Optional[threading.Event] = None):
        """STOPPED -> CONNECTING -> RUNNING

        이미 실행 중인 데몬이 있으면 기존 상태를 건드리지 않고 DaemonAlreadyRunningError.
        """
        if self.is_daemon_running():
            raise DaemonAlreadyRunningError(self.cluster_id, self.get_daemon_pid())
        self._acquire_lock()

        with self._state_lock:
            self.client = client
            self._set_state(MeshClientState.CONNECTING)
        try:
            status = client.connect(connect_timeout, cancel_event)
            if start_proxy:
                self.proxy_port = client.start_socks5_proxy(proxy_port)
                self._write(self.proxy_port_file, str(self.proxy_port))
            self._write(self.pid_file, str(os.getpid()))
        except BaseException:
            self._teardown(timeout=10.0)
            raise

        with self._state_lock:
            self._set_state(MeshClientState.RUNNING)
        self.logger.info(f"Mesh daemon for {self.cluster_id} running (PID: {os.getpid()})")
        return status

    def install_signal_handlers(self, stop_event: threading.Event):
        """SIGINT/SIGTERM 은 이벤트만 설정 (정리는 메인 흐름에서 수행)"""

        def handler(signum, _frame):
            self.logger.info(f"Received signal {signum}, shutting down")
            stop_event.set()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    def wait(self, stop_event: threading.Event, poll_interval: float = 1.0):
        while not stop_event.wait(poll_interval):
            pass

    def shutdown(self, timeout: float = 10.0):
        """RUNNING -> DISCONNECTING -> STOPPED"""
        with self._state_lock:
            if self.state in (MeshClientState.STOPPED, MeshClientState.DISCONNECTING):
                return
        self._teardown(timeout)
        self.logger.info(f"Mesh daemon for {self.cluster_id} stopped")

    def _teardown(self, timeout: float):
        # 순서: 프록시 중지 -> 클라이언트 연결 해제 -> 파일 정리 -> 잠금 해제
        with self._state_lock:
            self._set_state(MeshClientState.DISCONNECTING)
        client, self.client = self.client, None
        try:
            if client is not None:
                try:
                    client.stop_socks5_proxy()
                finally:
                    client.disconnect(timeout)
        finally:
            self.cleanup_files()
            self._release_lock()
            self.proxy_port = 0
            with self._state_lock:
                self._set_state(MeshClientState.STOPPED)

    def run(self, client, start_proxy: bool = False, proxy_port: int = 0,
            connect_timeout: float = 60.0, stop_event: Optional[threading.Event] = None) -> int:
        """포그라운드 실행: 시작 -> 시그널 대기 -> 종료"""
        stop_event = stop_event or threading.Event()
        if threading.current_thread() is threading.main_thread():
            self.install_signal_handlers(stop_event)
        try:
            self.start(client, start_proxy, proxy_port, connect_timeout, stop_event)
        except MeshError as e:
            self.logger.error(f"Failed to start mesh daemon: {e}")
            return 1
        try:
            self.wait(stop_event)
        finally:
            self.shutdown()
        return 0

    # ------------------------------------------------------------------
    # 백그라운드 프로세스 제어
    # ------------------------------------------------------------------

    def spawn_detached(self, argv: List[str], ready_timeout: float = 10.0,
                       poll_interval: float = 1.0, env: Optional[Dict[str, str]] = None) -> int:
        """새 세션으로 자식 프로세스를 분리 실행하고 PID 파일(준비 표시)을 기다림"""
        if self.is_daemon_running():
            raise DaemonAlreadyRunningError(self.cluster_id, self.get_daemon_pid())

        os.makedirs(self.state_dir, mode=0o700, exist_ok=True)
        self.logger.info(f"Starting background mesh daemon for {self.cluster_id}")
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            env=env,
        )

        deadline = time.monotonic() + ready_timeout
        while time.monotonic() < deadline:
            if self.is_daemon_running():
                return self.get_daemon_pid()
            if process.poll() is not None:
                raise DaemonStartError(f"daemon exited with code {process.returncode} before becoming ready")
            time.sleep(poll_interval)

        process.terminate()
        raise DaemonStartError(f"daemon did not become ready within {ready_timeout:.0f}s")

    def stop_daemon(self, timeout: float = 10.0) -> bool:
        """실행 중인 데몬에 SIGTERM 전송 후 종료 대기, 남은 파일 정리"""
        pid = self.get_daemon_pid()
        if pid is None or not process_alive(pid):
            self.cleanup_files()
            return False

        self.logger.info(f"Stopping mesh daemon (PID: {pid})")
        os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while process_alive(pid) and time.monotonic() < deadline:
            time.sleep(0.5)

        if process_alive(pid):
            self.logger.warning(f"Daemon {pid} did not exit in {timeout:.0f}s, sending SIGKILL")
            os.kill(pid, signal.SIGKILL)
        self.cleanup_files()
        return True
