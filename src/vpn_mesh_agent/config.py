"""
설정 관리 모듈
YAML/JSON 기반 설정 파일 관리 및 기본값 제공
"""

import ipaddress
import os
import yaml
import json
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

from .models import Node

MESH_MODES = ("wireguard", "tailscale")


@dataclass
class ClusterConfig:
    """클러스터 설정"""
    name: str = "default"
    mode: str = "wireguard"


@dataclass
class NetworkConfig:
    """메시 네트워크 설정"""
    subnet_cidr: str = "10.8.0.0/24"
    infrastructure_range: str = "10.8.0.1-10.8.0.9"
    node_range: str = "10.8.0.10-10.8.0.99"
    mesh_port: int = 51820
    interface: str = "wg0"
    config_path: str = "/etc/wireguard/wg0.conf"
    public_key_path: str = "/etc/wireguard/publickey"
    keepalive: int = 25
    dns: str = "1.1.1.1"
    extra_allowed_ips: list = field(default_factory=lambda: ["10.0.0.0/8"])


@dataclass
class BastionConfig:
    """Bastion 설정"""
    enabled: bool = False
    host: str = ""
    user: str = "root"
    port: int = 22


@dataclass
class SSHConfig:
    """SSH 설정"""
    key_path: str = ""
    port: int = 22
    timeout: float = 30.0
    command_timeout: float = 300.0
    use_sudo: bool = True
    default_user: str = "root"
    users: dict = field(default_factory=dict)  # provider -> user 재정의


@dataclass
class RetryConfig:
    """재시도 설정"""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0


@dataclass
class FleetConfig:
    """플릿 적용 설정"""
    max_workers: int = 4
    inter_host_delay: float = 1.0


@dataclass
class TailscaleConfig:
    """Headscale/Tailscale 설정"""
    headscale_url: str = ""
    api_key: str = ""
    namespace: str = "default"
    hostname: str = ""
    auth_key_ttl_hours: int = 24
    connect_timeout: float = 60.0
    api_timeout: float = 30.0
    tailscaled_path: str = "tailscaled"
    tailscale_path: str = "tailscale"
    state_root: str = "~/.vpn-mesh-agent/mesh"


@dataclass
class AgentConfig:
    """에이전트 설정"""
    log_dir: str = "~/.vpn-mesh-agent/logs"
    log_level: str = "INFO"
    data_dir: str = "~/.vpn-mesh-agent/registry"


class Config:
    """전체 설정 관리 클래스"""

    DEFAULT_CONFIG_PATHS = [
        "/etc/vpn-mesh-agent/config.yaml",
        "~/.vpn-mesh-agent/config.yaml",
        "./config.yaml",
    ]

    SECTIONS = ("cluster", "network", "bastion", "ssh", "retry", "fleet", "tailscale", "agent")

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.cluster = ClusterConfig()
        self.network = NetworkConfig()
        self.bastion = BastionConfig()
        self.ssh = SSHConfig()
        self.retry = RetryConfig()
        self.fleet = FleetConfig()
        self.tailscale = TailscaleConfig()
        self.agent = AgentConfig()
        self.nodes: List[Dict[str, Any]] = []

        if config_path:
            self.load(config_path)
        else:
            self._load_from_default_paths()

    def _load_from_default_paths(self):
        """기본 경로에서 설정 파일 로드"""
        for path in self.DEFAULT_CONFIG_PATHS:
            expanded_path = os.path.expanduser(path)
            if os.path.exists(expanded_path):
                self.load(expanded_path)
                return

    def load(self, path: str):
        """설정 파일 로드"""
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            return

        with open(path, 'r', encoding='utf-8') as f:
            if path.endswith('.json'):
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        self._update_from_dict(data)
        self.config_path = path

    def _update_from_dict(self, data: Dict[str, Any]):
        """딕셔너리에서 설정 업데이트"""
        for section in self.SECTIONS:
            values = data.get(section) or {}
            target = getattr(self, section)
            for key, value in values.items():
                if hasattr(target, key):
                    setattr(target, key, value)

        if 'nodes' in data:
            self.nodes = list(data['nodes'] or [])

    def get_nodes(self) -> List[Node]:
        return [Node.from_dict(item) for item in self.nodes]

    def validate(self) -> List[str]:
        """설정 검증, 문제 목록 반환"""
        problems = []

        if self.cluster.mode not in MESH_MODES:
            problems.append(f"cluster.mode must be one of {', '.join(MESH_MODES)}")

        try:
            ipaddress.ip_network(self.network.subnet_cidr, strict=False)
        except ValueError:
            problems.append(f"network.subnet_cidr is invalid: {self.network.subnet_cidr}")

        if self.bastion.enabled and not self.bastion.host:
            problems.append("bastion.host is required when bastion is enabled")

        if self.fleet.max_workers < 1:
            problems.append("fleet.max_workers must be >= 1")

        if self.retry.max_attempts < 1:
            problems.append("retry.max_attempts must be >= 1")

        names = set()
        for index, node in enumerate(self.get_nodes()):
            if not node.name:
                problems.append(f"nodes[{index}].name is required")
            elif node.name in names:
                problems.append(f"duplicate node name: {node.name}")
            names.add(node.name)
            if not (node.public_ip or node.private_ip):
                problems.append(f"node {node.name or index} needs public_ip or private_ip")

        if self.cluster.mode == "tailscale":
            if not self.tailscale.headscale_url:
                problems.append("tailscale.headscale_url is required in tailscale mode")
            if not self.tailscale.api_key:
                problems.append("tailscale.api_key is required in tailscale mode")

        return problems

    def save(self, path: Optional[str] = None):
        """설정 파일 저장"""
        save_path = path or self.config_path or self.DEFAULT_CONFIG_PATHS[1]
        save_path = os.path.expanduser(save_path)

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        data = self.to_dict()
        with open(save_path, 'w', encoding='utf-8') as f:
            if save_path.endswith('.json'):
                json.dump(data, f, indent=2)
            else:
                yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        data = {section: asdict(getattr(self, section)) for section in self.SECTIONS}
        data['nodes'] = list(self.nodes)
        return data

    def create_sample(self, output_path: str):
        """샘플 설정 파일 생성"""
        template = """# VPN Mesh Agent Configuration File
# 이 파일을 복사하여 config.yaml로 사용하세요

# 클러스터 설정
cluster:
  name: "production"
  mode: "wireguard"  # wireguard 또는 tailscale

# 메시 네트워크 설정
network:
  subnet_cidr: "10.8.0.0/24"
  infrastructure_range: "10.8.0.1-10.8.0.9"  # 인프라 예약 범위
  node_range: "10.8.0.10-10.8.0.99"  # 클러스터 노드 예약 범위
  mesh_port: 51820
  interface: "wg0"
  config_path: "/etc/wireguard/wg0.conf"
  public_key_path: "/etc/wireguard/publickey"
  keepalive: 25
  dns: "1.1.1.1"
  extra_allowed_ips:
    - "10.0.0.0/8"

# Bastion 설정 (사설 노드 접근용)
bastion:
  enabled: false
  host: ""
  user: "root"
  port: 22

# SSH 설정
ssh:
  key_path: "~/.ssh/id_ed25519"
  port: 22
  timeout: 30
  command_timeout: 300
  use_sudo: true
  default_user: "root"
  users: {}  # 예: {azure: azureuser, aws: ubuntu}

# 재시도 설정
retry:
  max_attempts: 3
  initial_delay: 1.0
  max_delay: 30.0
  backoff_factor: 2.0

# 플릿 적용 설정
fleet:
  max_workers: 4  # 1이면 순차 실행
  inter_host_delay: 1.0  # 순차 실행 + bastion 사용 시 노드 간 대기 (초)

# Headscale/Tailscale 설정 (mode: tailscale)
tailscale:
  headscale_url: "https://headscale.example.com"
  api_key: ""
  namespace: "default"
  hostname: ""  # 비워두면 자동 생성
  auth_key_ttl_hours: 24
  connect_timeout: 60
  api_timeout: 30
  tailscaled_path: "tailscaled"
  tailscale_path: "tailscale"
  state_root: "~/.vpn-mesh-agent/mesh"

# 에이전트 설정
agent:
  log_dir: "~/.vpn-mesh-agent/logs"
  log_level: "INFO"  # DEBUG, INFO, WARNING, ERROR
  data_dir: "~/.vpn-mesh-agent/registry"

# 클러스터 노드 (프로비저닝 시스템 출력)
nodes:
  - name: "master-1"
    provider: "aws"
    public_ip: "203.0.113.10"
    private_ip: "172.31.0.10"
    mesh_ip: "10.8.0.10"
    role: "master"
  - name: "worker-1"
    provider: "azure"
    public_ip: "203.0.113.11"
    private_ip: "10.1.0.4"
    mesh_ip: "10.8.0.11"
    role: "worker"
"""

        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(template)
