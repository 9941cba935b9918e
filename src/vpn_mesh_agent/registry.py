"""
피어 레지스트리 모듈
클러스터별 VPN 피어 저장, 주소 할당, 조회

모든 변경은 클러스터 단위 잠금 안에서 load -> mutate -> save 순서로 수행한다.
"""

import fcntl
import ipaddress
import json
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import (
    AddressSpaceExhaustedError,
    DuplicateAddressError,
    DuplicateKeyError,
    PeerNotFoundError,
    RegistryError,
)
from .logger import get_logger
from .models import RegisteredPeer, utc_now

DEFAULT_DATA_DIR = "~/.vpn-mesh-agent/registry"

_CLUSTER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _check_cluster_id(cluster_id: str) -> str:
    if not cluster_id or not _CLUSTER_RE.match(cluster_id):
        raise RegistryError(f"invalid cluster identifier: {cluster_id!r}")
    return cluster_id


class RegistryStore:
    """레지스트리 저장소 인터페이스"""

    def load(self, cluster_id: str) -> List[RegisteredPeer]:
        raise NotImplementedError

    def save(self, cluster_id: str, peers: List[RegisteredPeer]):
        raise NotImplementedError

    @contextmanager
    def lock(self, cluster_id: str) -> Iterator[None]:
        yield


class JsonFileStore(RegistryStore):
    """클러스터별 JSON 파일 저장소

    <data_dir>/<cluster>-peers.json 에 저장하고, 같은 머신의 다른 프로세스와는
    <cluster>-peers.lock 에 대한 flock 으로 직렬화한다.
    """

    def __init__(self, data_dir: str = DEFAULT_DATA_DIR):
        self.data_dir = os.path.expanduser(data_dir)

    def path_for(self, cluster_id: str) -> str:
        return os.path.join(self.data_dir, f"{cluster_id}-peers.json")

    def lock_path_for(self, cluster_id: str) -> str:
        return os.path.join(self.data_dir, f"{cluster_id}-peers.lock")

    def load(self, cluster_id: str) -> List[RegisteredPeer]:
        path = self.path_for(cluster_id)
        if not os.path.exists(path):
            return []
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"failed to read peer registry {path}: {e}") from e

        entries = data.get("peers", []) if isinstance(data, dict) else data
        return [RegisteredPeer.from_dict(entry) for entry in entries]

    def save(self, cluster_id: str, peers: List[RegisteredPeer]):
        os.makedirs(self.data_dir, mode=0o700, exist_ok=True)
        path = self.path_for(cluster_id)
        data = {
            "cluster": cluster_id,
            "updated_at": utc_now(),
            "peers": [peer.to_dict() for peer in peers],
        }

        # 임시 파일에 쓴 후 교체 (부분 쓰기 방지)
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{cluster_id}-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RegistryError(f"failed to write peer registry {path}: {e}") from e

    @contextmanager
    def lock(self, cluster_id: str) -> Iterator[None]:
        os.makedirs(self.data_dir, mode=0o700, exist_ok=True)
        with open(self.lock_path_for(cluster_id), 'a') as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def parse_reserved_range(value: str) -> Tuple[ipaddress.IPv4Address, ipaddress.IPv4Address]:
    """예약 범위 파싱

    "10.8.0.1-10.8.0.9", "10.8.0.0/28", "10.8.0.5" 형식을 지원한다.
    반환값은 (시작, 끝) 주소 쌍이다.
    """
    value = value.strip()
    try:
        if "-" in value:
            start, end = (part.strip() for part in value.split("-", 1))
            first, last = ipaddress.ip_address(start), ipaddress.ip_address(end)
        elif "/" in value:
            network = ipaddress.ip_network(value, strict=False)
            first, last = network.network_address, network.broadcast_address
        else:
            first = last = ipaddress.ip_address(value)
    except ValueError as e:
        raise RegistryError(f"invalid reserved range {value!r}: {e}") from e

    if first > last:
        raise RegistryError(f"invalid reserved range {value!r}: start is after end")
    return first, last


class PeerRegistry:
    """클러스터별 VPN 피어 레지스트리"""

    # 프로세스 내 클러스터별 잠금
    _locks: Dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, store: Optional[RegistryStore] = None):
        self.store = store or JsonFileStore()
        self.logger = get_logger()

    @classmethod
    def _cluster_lock(cls, cluster_id: str) -> threading.Lock:
        with cls._locks_guard:
            if cluster_id not in cls._locks:
                cls._locks[cluster_id] = threading.Lock()
            return cls._locks[cluster_id]

    @contextmanager
    def _locked(self, cluster_id: str) -> Iterator[List[RegisteredPeer]]:
        """잠금 안에서 피어 목록을 읽어 반환"""
        _check_cluster_id(cluster_id)
        with self._cluster_lock(cluster_id):
            with self.store.lock(cluster_id):
                yield self.store.load(cluster_id)

    def _read(self, cluster_id: str) -> List[RegisteredPeer]:
        with self._locked(cluster_id) as peers:
            return peers

    def next_available_ip(self, cluster_id: str, subnet_cidr: str,
                          reserved_ranges: Sequence[str] = ()) -> str:
        """서브넷에서 사용 가능한 첫 번째 IP

        예약 범위와 이미 등록된 주소를 건너뛰고 오름차순으로 검색한다.
        """
        try:
            network = ipaddress.ip_network(subnet_cidr, strict=False)
        except ValueError as e:
            raise RegistryError(f"invalid subnet {subnet_cidr!r}: {e}") from e

        reserved = [parse_reserved_range(value) for value in reserved_ranges if value]
        used = {peer.vpn_ip for peer in self._read(cluster_id)}

        for address in network.hosts():
            if str(address) in used:
                continue
            if any(first <= address <= last for first, last in reserved):
                continue
            self.logger.debug(f"Next available IP in {subnet_cidr}: {address}")
            return str(address)

        raise AddressSpaceExhaustedError(subnet_cidr)

    def register(self, cluster_id: str, peer: RegisteredPeer) -> RegisteredPeer:
        """피어 등록 (공개키/IP 중복 시 실패, 저장소는 변경되지 않음)"""
        with self._locked(cluster_id) as peers:
            for existing in peers:
                if existing.public_key == peer.public_key:
                    raise DuplicateKeyError(peer.public_key)
                if existing.vpn_ip == peer.vpn_ip:
                    raise DuplicateAddressError(peer.vpn_ip)

            if not peer.created_at:
                peer.created_at = utc_now()
            peers.append(peer)
            self.store.save(cluster_id, peers)

        self.logger.info(f"Registered peer {peer.label or peer.public_key[:8]} ({peer.vpn_ip}) in cluster {cluster_id}")
        return peer

    def unregister(self, cluster_id: str, public_key: str) -> bool:
        """피어 제거. 없는 키는 아무것도 변경하지 않고 False 반환"""
        with self._locked(cluster_id) as peers:
            remaining = [peer for peer in peers if peer.public_key != public_key]
            if len(remaining) == len(peers):
                self.logger.debug(f"Peer {public_key[:8]}... not registered in {cluster_id}, nothing to remove")
                return False
            self.store.save(cluster_id, remaining)

        self.logger.info(f"Unregistered peer {public_key[:8]}... from cluster {cluster_id}")
        return True

    def _find(self, cluster_id: str, field: str, value: str) -> RegisteredPeer:
        for peer in self._read(cluster_id):
            if getattr(peer, field) == value:
                return peer
        raise PeerNotFoundError(field, value)

    def get_by_label(self, cluster_id: str, label: str) -> RegisteredPeer:
        return self._find(cluster_id, "label", label)

    def get_by_ip(self, cluster_id: str, vpn_ip: str) -> RegisteredPeer:
        return self._find(cluster_id, "vpn_ip", vpn_ip)

    def get_by_public_key(self, cluster_id: str, public_key: str) -> RegisteredPeer:
        return self._find(cluster_id, "public_key", public_key)

    def get_by_machine(self, cluster_id: str, machine: str) -> RegisteredPeer:
        return self._find(cluster_id, "machine", machine)

    def list(self, cluster_id: str) -> List[RegisteredPeer]:
        return self._read(cluster_id)

    def count(self, cluster_id: str) -> int:
        return len(self._read(cluster_id))

    def exists(self, cluster_id: str, identifier: str) -> bool:
        """공개키, 라벨, IP, 머신 ID 중 하나라도 일치하면 True"""
        for peer in self._read(cluster_id):
            if identifier in (peer.public_key, peer.vpn_ip, peer.label, peer.machine) and identifier:
                return True
        return False

    def touch(self, cluster_id: str, public_key: str) -> RegisteredPeer:
        """last_seen 갱신"""
        with self._locked(cluster_id) as peers:
            for peer in peers:
                if peer.public_key == public_key:
                    peer.last_seen = utc_now()
                    self.store.save(cluster_id, peers)
                    return peer
        raise PeerNotFoundError("public_key", public_key)

    def clear(self, cluster_id: str) -> int:
        """모든 피어 제거, 제거된 개수 반환"""
        with self._locked(cluster_id) as peers:
            removed = len(peers)
            self.store.save(cluster_id, [])
        self.logger.warning(f"Cleared {removed} peer(s) from cluster {cluster_id}")
        return removed
