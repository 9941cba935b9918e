"""
데이터 모델
노드, 피어, 플릿 작업 결과
"""

import base64
import binascii
import ipaddress
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import PeerValidationError

DEFAULT_KEEPALIVE = 25


def utc_now() -> str:
    """현재 UTC 시각 (ISO-8601)"""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def is_valid_wireguard_key(key: str) -> bool:
    """44자 base64, 디코딩 시 32바이트인지 확인"""
    if not isinstance(key, str) or len(key) != 44:
        return False
    try:
        return len(base64.b64decode(key, validate=True)) == 32
    except (binascii.Error, ValueError):
        return False


@dataclass(frozen=True)
class Node:
    """클러스터 노드 (프로비저닝 시스템이 제공하는 읽기 전용 정보)"""
    name: str
    provider: str = ""
    public_ip: str = ""
    private_ip: str = ""
    mesh_ip: str = ""
    role: str = "worker"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            name=str(data.get("name", "")),
            provider=str(data.get("provider", "")),
            public_ip=str(data.get("public_ip", "") or ""),
            private_ip=str(data.get("private_ip", "") or ""),
            mesh_ip=str(data.get("mesh_ip", "") or ""),
            role=str(data.get("role", "worker")),
        )

    def target_ip(self, via_bastion: bool) -> str:
        """SSH 접속 대상 IP

        bastion 경유 시에는 메시/사설 IP, 직접 접속 시에는 공인 IP를 사용한다.
        """
        if via_bastion:
            return self.mesh_ip or self.private_ip or self.public_ip
        return self.public_ip or self.private_ip or self.mesh_ip


@dataclass
class RegisteredPeer:
    """레지스트리에 등록된 메시 참여자"""
    public_key: str
    vpn_ip: str
    label: str = ""
    allowed_ips: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    last_seen: str = ""
    machine: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegisteredPeer":
        return cls(
            public_key=data.get("public_key", ""),
            vpn_ip=data.get("vpn_ip", ""),
            label=data.get("label", "") or "",
            allowed_ips=list(data.get("allowed_ips") or []),
            created_at=data.get("created_at", "") or "",
            last_seen=data.get("last_seen", "") or "",
            machine=data.get("machine", "") or "",
        )


@dataclass
class PeerConfig:
    """원격 WireGuard에 추가할 [Peer] 블록 설정"""
    public_key: str
    allowed_ips: List[str] = field(default_factory=list)
    keepalive: int = DEFAULT_KEEPALIVE
    label: str = ""
    endpoint: str = ""
    preshared_key: str = ""

    @property
    def address(self) -> str:
        """첫 번째 AllowedIPs의 주소 부분 (예: 10.8.0.100)"""
        if not self.allowed_ips:
            return ""
        return self.allowed_ips[0].split("/", 1)[0]

    def validate(self):
        """설정 검증 (실패 시 PeerValidationError)"""
        if not is_valid_wireguard_key(self.public_key):
            raise PeerValidationError(
                f"invalid public key: must be 44 base64 characters encoding 32 bytes"
            )

        if not self.allowed_ips:
            raise PeerValidationError("at least one allowed IP is required")

        for cidr in self.allowed_ips:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                raise PeerValidationError(f"invalid allowed IP: {cidr!r}")

        if not isinstance(self.keepalive, int) or not 0 <= self.keepalive <= 65535:
            raise PeerValidationError(f"invalid keepalive: {self.keepalive}")

        if self.endpoint:
            host, sep, port = self.endpoint.rpartition(":")
            if not sep or not host:
                raise PeerValidationError(f"invalid endpoint format, expected host:port: {self.endpoint!r}")
            if not port.isdigit() or not 1 <= int(port) <= 65535:
                raise PeerValidationError(f"invalid endpoint port: {self.endpoint!r}")

        if self.preshared_key and not is_valid_wireguard_key(self.preshared_key):
            raise PeerValidationError("invalid preshared key")


@dataclass
class HostFailure:
    """호스트별 실패 정보"""
    host: str
    error: str


@dataclass
class FleetResult:
    """플릿 전체 적용 결과"""
    operation: str
    success_count: int = 0
    fail_count: int = 0
    failures: List[HostFailure] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.success_count > 0

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count

    def add_success(self, host: str, value: Any = None):
        self.success_count += 1
        self.results[host] = value

    def add_failure(self, host: str, error: BaseException):
        self.fail_count += 1
        self.failures.append(HostFailure(host=host, error=str(error)))


@dataclass
class JoinResult:
    """join 작업 결과"""
    vpn_ip: str
    public_key: str
    private_key: Optional[str]
    label: str
    client_config: str
    fleet: FleetResult


@dataclass
class LeaveResult:
    """leave 작업 결과"""
    vpn_ip: str
    public_key: str
    fleet: FleetResult
    unregistered: bool = False
