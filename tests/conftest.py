"""
공용 테스트 픽스처
SSH 대신 로컬 bash 로 원격 스크립트를 실행하는 연결 더블 제공
"""

import os
import subprocess

import pytest

from vpn_mesh_agent.config import Config
from vpn_mesh_agent.connection import Connection
from vpn_mesh_agent.errors import RemoteCommandError, SSHConnectionError
from vpn_mesh_agent.keys import KeyGenerator
from vpn_mesh_agent.logger import init_logger
from vpn_mesh_agent.wireguard import WireGuardTool

INTERFACE_BLOCK = """[Interface]
PrivateKey = {private_key}
Address = {address}/24
ListenPort = 51820
"""


@pytest.fixture(autouse=True)
def agent_logger(tmp_path):
    """테스트마다 임시 디렉토리로 로거 초기화"""
    return init_logger(str(tmp_path / "logs"), "DEBUG", False, console_output=False)


class LocalConnection(Connection):
    """명령을 로컬 bash 로 실행하는 연결 (작업 디렉토리 = 노드 디렉토리)"""

    def __init__(self, host: str, workdir: str):
        self.host = host
        self.workdir = workdir
        self.closed = False
        self.commands = []

    def execute(self, command, timeout=None, input_data=None):
        if self.closed:
            raise RemoteCommandError(self.host, command, -1, "connection is closed")
        self.commands.append(command)
        result = subprocess.run(
            ["bash", "-c", command],
            input=input_data,
            capture_output=True,
            text=True,
            cwd=self.workdir,
            timeout=timeout or 30,
        )
        output = result.stdout + result.stderr
        if result.returncode != 0:
            raise RemoteCommandError(self.host, command, result.returncode, output)
        return output

    def is_alive(self):
        return not self.closed

    def close(self):
        self.closed = True


class LocalWireGuardTool(WireGuardTool):
    """wg/wg-quick 없이 동작하는 도구 규약 (상대 경로, sudo 없음)"""

    def __init__(self):
        super().__init__(config_path="wg0.conf", interface="wg0",
                         public_key_path="publickey", use_sudo=False)

    def validate_command(self):
        return 'grep -q "^\\[Interface\\]" "$CONFIG"'

    def sync_command(self):
        return "true"

    def dump_command(self):
        return "cat wg-dump.txt"

    def listen_check_command(self, port):
        return f"grep -q ':{port} ' ss-udp.txt 2>/dev/null && echo LISTENING || echo NOT_LISTENING"

    def ping_command(self, ip):
        return f"grep -qxF {ip} reachable.txt 2>/dev/null && echo PING_OK || echo PING_FAIL"


class LocalConnectionManager:
    """호스트별 로컬 디렉토리에 연결하는 ConnectionManager 대역"""

    def __init__(self, host_dirs, unreachable=()):
        self.host_dirs = host_dirs
        self.unreachable = set(unreachable)
        self.opened = []

    def connect(self, config, deadline=None):
        if config.host in self.unreachable:
            raise SSHConnectionError(config.host, ConnectionRefusedError("connection refused"), 3)
        conn = LocalConnection(config.host, self.host_dirs[config.host])
        self.opened.append(conn)
        return conn


def make_node_dir(base, name: str, address: str) -> dict:
    """WireGuard 설정과 공개키 파일을 가진 노드 디렉토리 생성"""
    pair = KeyGenerator().generate()
    node_dir = base / name
    node_dir.mkdir(parents=True)
    (node_dir / "wg0.conf").write_text(INTERFACE_BLOCK.format(private_key=pair.private_key, address=address))
    (node_dir / "publickey").write_text(pair.public_key + "\n")
    return {"dir": str(node_dir), "public_key": pair.public_key}


@pytest.fixture
def local_conn(tmp_path):
    """단일 노드 로컬 연결"""
    info = make_node_dir(tmp_path, "node", "10.8.0.10")
    return LocalConnection("node", info["dir"])


@pytest.fixture
def mesh_cluster(tmp_path):
    """3노드 클러스터 설정과 노드 디렉토리"""
    nodes = [
        {"name": "master-1", "provider": "aws", "public_ip": "198.51.100.1", "mesh_ip": "10.8.0.10", "role": "master"},
        {"name": "worker-1", "provider": "gcp", "public_ip": "198.51.100.2", "mesh_ip": "10.8.0.11", "role": "worker"},
        {"name": "worker-2", "provider": "azure", "public_ip": "198.51.100.3", "mesh_ip": "10.8.0.12", "role": "worker"},
    ]
    host_dirs = {}
    node_keys = {}
    for node in nodes:
        info = make_node_dir(tmp_path / "hosts", node["name"], node["mesh_ip"])
        host_dirs[node["public_ip"]] = info["dir"]
        node_keys[node["name"]] = info["public_key"]

    cfg = Config(str(tmp_path / "missing.yaml"))
    cfg.cluster.name = "test-cluster"
    cfg.nodes = nodes
    cfg.agent.data_dir = str(tmp_path / "registry")
    cfg.agent.log_dir = str(tmp_path / "logs")
    cfg.ssh.use_sudo = False
    cfg.network.config_path = "wg0.conf"
    cfg.network.public_key_path = "publickey"
    cfg.fleet.max_workers = 1

    return {"config": cfg, "host_dirs": host_dirs, "node_keys": node_keys, "nodes": nodes}
