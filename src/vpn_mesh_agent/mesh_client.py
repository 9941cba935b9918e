"""
임베디드 메시 클라이언트 모듈 (Tailscale/Headscale 경로)
에이전트 전용 userspace tailscaled 를 실행하여 시스템 설치 없이 메시에 참여
"""

import json
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional

from .errors import MeshConnectError, ProxyStartError
from .logger import get_logger
from .models import utc_now
from .socks5 import Socks5Proxy, socks5_connect

DEFAULT_STATE_ROOT = "~/.vpn-mesh-agent/mesh"
CONNECTION_FILE = "connection.json"
POLL_INTERVAL = 0.5


def default_hostname() -> str:
    return f"vpn-mesh-{socket.gethostname().split('.')[0].lower()}"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@dataclass
class MeshClientConfig:
    """임베디드 클라이언트 설정"""
    coordinator_url: str
    auth_key: str = ""
    hostname: str = ""
    state_root: str = DEFAULT_STATE_ROOT
    tailscaled_path: str = "tailscaled"
    tailscale_path: str = "tailscale"


@dataclass
class MeshStatus:
    """메시 연결 상태"""
    connected: bool = False
    backend_state: str = ""
    hostname: str = ""
    mesh_ip: str = ""
    peer_count: int = 0
    coordinator_url: str = ""
    cluster_id: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


class EmbeddedMeshClient:
    """임베디드 메시 클라이언트"""

    def __init__(self, cluster_id: str, config: MeshClientConfig,
                 runner: Callable = subprocess.run, popen: Callable = subprocess.Popen):
        self.cluster_id = cluster_id
        self.config = config
        self.hostname = config.hostname or default_hostname()
        self.state_dir = os.path.join(os.path.expanduser(config.state_root), cluster_id)
        self.socket_path = os.path.join(self.state_dir, "tailscaled.sock")
        self.connection_file = os.path.join(self.state_dir, CONNECTION_FILE)
        self.runner = runner
        self.popen = popen
        self.logger = get_logger()

        self._process: Optional[subprocess.Popen] = None
        self._outlet_port = 0
        self._proxy: Optional[Socks5Proxy] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # tailscale CLI
    # ------------------------------------------------------------------

    def _cli(self, *args: str, timeout: float) -> subprocess.CompletedProcess:
        cmd = [self.config.tailscale_path, f"--socket={self.socket_path}", *args]
        return self.runner(cmd, capture_output=True, text=True, timeout=timeout)

    def _status_json(self, timeout: float) -> Dict:
        try:
            result = self._cli("status", "--json", timeout=timeout)
        except (subprocess.TimeoutExpired, OSError) as e:
            self.logger.debug(f"tailscale status failed: {e}")
            return {}
        if result.returncode != 0:
            return {}
        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError:
            self.logger.debug("tailscale status returned invalid JSON")
            return {}

    # ------------------------------------------------------------------
    # 연결
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _start_daemon(self):
        os.makedirs(self.state_dir, mode=0o700, exist_ok=True)
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        self._outlet_port = _free_port()
        cmd = [
            self.config.tailscaled_path,
            "--tun=userspace-networking",
            f"--statedir={self.state_dir}",
            f"--socket={self.socket_path}",
            f"--socks5-server=127.0.0.1:{self._outlet_port}",
            "--port=0",
        ]
        log_path = os.path.join(self.state_dir, "tailscaled.log")
        self.logger.debug(f"Starting private tailscaled: {' '.join(cmd)}")
        with open(log_path, "ab") as log_file:
            try:
                self._process = self.popen(cmd, stdout=log_file, stderr=subprocess.STDOUT,
                                           stdin=subprocess.DEVNULL, start_new_session=True)
            except OSError as e:
                raise MeshConnectError(f"cannot start {self.config.tailscaled_path}: {e}") from e

    def _wait(self, condition: Callable[[], bool], deadline: float,
              cancel_event: Optional[threading.Event], what: str):
        while not condition():
            if cancel_event is not None and cancel_event.is_set():
                raise MeshConnectError(f"cancelled while waiting for {what}")
            if self._process is not None and self._process.poll() is not None:
                raise MeshConnectError(f"tailscaled exited with code {self._process.returncode} while waiting for {what}")
            if time.monotonic() >= deadline:
                raise MeshConnectError(f"timed out waiting for {what}")
            time.sleep(POLL_INTERVAL)

    def connect(self, timeout: float = 60.0, cancel_event: Optional[threading.Event] = None) -> MeshStatus:
        """메시 연결 (핸드셰이크 완료, 타임아웃, 취소 중 먼저 오는 것까지 대기)"""
        with self._lock:
            if self.connected:
                return self.status()
            if not self.config.auth_key:
                raise MeshConnectError("an auth key is required to join the mesh")

            deadline = time.monotonic() + timeout
            self.logger.info(f"Connecting to mesh {self.config.coordinator_url} as {self.hostname}")
            try:
                self._start_daemon()
                self._wait(lambda: os.path.exists(self.socket_path), deadline, cancel_event, "tailscaled socket")

                remaining = max(1, int(deadline - time.monotonic()))
                try:
                    result = self._cli(
                        "up",
                        f"--login-server={self.config.coordinator_url}",
                        f"--authkey={self.config.auth_key}",
                        f"--hostname={self.hostname}",
                        "--accept-dns=false",
                        "--reset",
                        f"--timeout={remaining}s",
                        timeout=remaining + 5,
                    )
                except subprocess.TimeoutExpired as e:
                    raise MeshConnectError(f"tailscale up timed out after {remaining}s") from e
                except OSError as e:
                    raise MeshConnectError(f"cannot run {self.config.tailscale_path}: {e}") from e
                if result.returncode != 0:
                    raise MeshConnectError(f"tailscale up failed: {(result.stderr or result.stdout).strip()}")

                self._wait(lambda: self._status_json(5).get("BackendState") == "Running",
                           deadline, cancel_event, "mesh handshake")
            except MeshConnectError as e:
                self.logger.error(f"Mesh connection failed: {e}")
                self._stop_daemon(timeout=5)
                raise

            status = self.status()
            self._save_connection(status)
            self.logger.info(f"Connected to mesh: {status.mesh_ip} ({status.peer_count} peers)")
            return status

    def status(self, timeout: float = 5.0) -> MeshStatus:
        data = self._status_json(timeout)
        backend_state = data.get("BackendState", "") if data else ""
        self_info = data.get("Self") or {}
        ips = self_info.get("TailscaleIPs") or []
        ipv4 = [ip for ip in ips if ":" not in ip]
        return MeshStatus(
            connected=backend_state == "Running",
            backend_state=backend_state or "Stopped",
            hostname=self_info.get("HostName", "") or self.hostname,
            mesh_ip=(ipv4 or ips or [""])[0],
            peer_count=len(data.get("Peer") or {}),
            coordinator_url=self.config.coordinator_url,
            cluster_id=self.cluster_id,
        )

    def list_peers(self, timeout: float = 5.0) -> List[Dict]:
        peers = []
        for peer in (self._status_json(timeout).get("Peer") or {}).values():
            ips = peer.get("TailscaleIPs") or []
            peers.append({
                "hostname": peer.get("HostName", ""),
                "mesh_ip": ips[0] if ips else "",
                "online": bool(peer.get("Online", False)),
            })
        return peers

    def disconnect(self, timeout: float = 10.0):
        """세션 종료 및 로컬 자원 정리 (모든 단계가 시간 제한을 가짐)"""
        self.stop_socks5_proxy()
        if self.connected:
            try:
                result = self._cli("down", timeout=timeout)
                if result.returncode != 0:
                    self.logger.warning(f"tailscale down failed: {result.stderr.strip()}")
            except (subprocess.TimeoutExpired, OSError) as e:
                self.logger.warning(f"tailscale down did not complete: {e}")
        self._stop_daemon(timeout)
        if os.path.exists(self.connection_file):
            os.unlink(self.connection_file)
        self.logger.info("Disconnected from mesh")

    def _stop_daemon(self, timeout: float):
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        process.send_signal(signal.SIGTERM)
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning("tailscaled did not exit, killing")
            process.kill()
            process.wait(timeout=timeout)

    # ------------------------------------------------------------------
    # 트래픽
    # ------------------------------------------------------------------

    def dial(self, host: str, port: int, timeout: float = 30.0) -> socket.socket:
        """메시를 통한 TCP 연결"""
        if not self.connected or not self._outlet_port:
            raise MeshConnectError("mesh client is not connected")
        return socks5_connect("127.0.0.1", self._outlet_port, host, port, timeout)

    def start_socks5_proxy(self, port: int = 0) -> int:
        """로컬 SOCKS5 프록시 시작, 바인드된 포트 반환"""
        if not self.connected:
            raise ProxyStartError("mesh client is not connected")
        if self._proxy is None:
            self._proxy = Socks5Proxy(self.dial)
        return self._proxy.start(port)

    def stop_socks5_proxy(self):
        proxy, self._proxy = self._proxy, None
        if proxy is not None:
            proxy.stop()

    # ------------------------------------------------------------------
    # 상태 파일
    # ------------------------------------------------------------------

    def _save_connection(self, status: MeshStatus):
        data = status.to_dict()
        data.update({
            "tailscaled_pid": self._process.pid if self._process else 0,
            "connected_at": utc_now(),
        })
        with open(self.connection_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def saved_connection(self) -> Optional[Dict]:
        if not os.path.exists(self.connection_file):
            return None
        with open(self.connection_file, "r", encoding="utf-8") as f:
            return json.load(f)

    @classmethod
    def load_existing(cls, cluster_id: str, config: MeshClientConfig,
                      runner: Callable = subprocess.run,
                      popen: Callable = subprocess.Popen) -> Optional["EmbeddedMeshClient"]:
        """저장된 연결 정보가 있으면 해당 클러스터의 클라이언트 반환 (상태 조회용)

        반환된 클라이언트는 프로세스를 소유하지 않으므로 status/list_peers 만 의미가 있다.
        """
        client = cls(cluster_id, config, runner, popen)
        saved = client.saved_connection()
        if saved is None:
            return None
        if not config.hostname and saved.get("hostname"):
            client.hostname = saved["hostname"]
        return client
