"""
VPN 메시 관리 모듈 (WireGuard 경로)
join/leave 워크플로우: 헬스체크 -> 레지스트리 -> 노드별 피어 적용
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console

from .client_config import ClientConfigGenerator
from .config import Config
from .connection import Connection, ConnectionConfig, ConnectionManager, ssh_user_for_provider
from .errors import (
    BastionUnreachableError,
    ConfigError,
    DuplicateAddressError,
    DuplicateKeyError,
    FleetApplyError,
    MeshError,
    PeerNotFoundError,
    PeerValidationError,
    RemoteCommandError,
)
from .keys import KeyGenerator
from .logger import get_logger
from .models import (
    FleetResult,
    JoinResult,
    LeaveResult,
    Node,
    PeerConfig,
    RegisteredPeer,
    is_valid_wireguard_key,
    utc_now,
)
from .monitor import HealthChecker
from .network import NetworkChecker
from .operations import OperationRecord, OperationRecorder
from .registry import JsonFileStore, PeerRegistry
from .retry import RetryPolicy
from .wireguard import ConfigManager, WireGuardTool

console = Console()


class VPNManager:
    """VPN 메시 관리 클래스"""

    def __init__(self, config: Config,
                 registry: Optional[PeerRegistry] = None,
                 connection_manager: Optional[ConnectionManager] = None,
                 config_manager: Optional[ConfigManager] = None,
                 key_generator: Optional[KeyGenerator] = None,
                 health_checker: Optional[HealthChecker] = None,
                 network_checker: Optional[NetworkChecker] = None,
                 recorder: Optional[OperationRecorder] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 debug: bool = False):
        self.config = config
        self.cluster = config.cluster.name
        self.debug = debug
        self.logger = get_logger()
        self.sleep = sleep

        retry = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            initial_delay=config.retry.initial_delay,
            max_delay=config.retry.max_delay,
            backoff_factor=config.retry.backoff_factor,
        )
        tool = WireGuardTool(
            config_path=config.network.config_path,
            interface=config.network.interface,
            public_key_path=config.network.public_key_path,
            use_sudo=config.ssh.use_sudo,
        )

        self.registry = registry or PeerRegistry(JsonFileStore(config.agent.data_dir))
        self.connection_manager = connection_manager or ConnectionManager(
            retry, key_path=config.ssh.key_path or None, sleep=sleep)
        self.config_manager = config_manager or ConfigManager(tool)
        self.key_generator = key_generator or KeyGenerator()
        self.network_checker = network_checker or NetworkChecker(debug)
        self.health_checker = health_checker or HealthChecker(
            self.connection_manager, self.config_manager, self.network_checker, config.agent.log_dir)
        self.recorder = recorder or OperationRecorder(config.agent.log_dir)
        self.client_config = ClientConfigGenerator(
            subnet_cidr=config.network.subnet_cidr,
            mesh_port=config.network.mesh_port,
            keepalive=config.network.keepalive,
            dns=config.network.dns,
            extra_allowed_ips=config.network.extra_allowed_ips,
        )

    # ------------------------------------------------------------------
    # 연결 설정
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> List[Node]:
        return self.config.get_nodes()

    @property
    def uses_bastion(self) -> bool:
        return bool(self.config.bastion.enabled and self.config.bastion.host)

    def connection_config(self, node: Node) -> ConnectionConfig:
        """노드 SSH 연결 설정 (bastion 경유 시 메시/사설 IP 사용)"""
        ssh = self.config.ssh
        cfg = ConnectionConfig(
            host=node.target_ip(self.uses_bastion),
            user=ssh_user_for_provider(node.provider, ssh.users, ssh.default_user),
            port=ssh.port,
            timeout=ssh.timeout,
            key_path=ssh.key_path or None,
            command_timeout=ssh.command_timeout,
        )
        if self.uses_bastion:
            cfg.bastion_host = self.config.bastion.host
            cfg.bastion_user = self.config.bastion.user
            cfg.bastion_port = self.config.bastion.port
        return cfg

    def probe_bastion(self):
        """bastion 도달성 확인 (실패 시 BastionUnreachableError)"""
        if not self.uses_bastion:
            return
        bastion = self.config.bastion
        result = self.health_checker.check_bastion(bastion.host, bastion.port, timeout=self.config.ssh.timeout)
        if not result["healthy"]:
            self.logger.error(f"Bastion {bastion.host}:{bastion.port} unreachable: {result['message']}")
            raise BastionUnreachableError(bastion.host, bastion.port, result["message"])
        self.logger.info(f"Bastion {bastion.host}:{bastion.port} is reachable")

    def check_health(self, save_report: bool = False, mesh: bool = True,
                     wait: float = 0) -> Dict:
        """bastion 및 전체 노드 헬스체크

        Args:
            save_report: 결과를 JSON 리포트로 저장
            mesh: 노드 간 메시 IP ping 포함
            wait: 0 보다 크면 healthy 가 될 때까지 최대 wait 초 반복
        """
        nodes = self.nodes
        bastion = None
        if self.uses_bastion and nodes:
            bastion = self.connection_config(nodes[0])

        def check() -> Dict:
            return self.health_checker.check_all(
                nodes, self.connection_config, bastion,
                listen_port=self.config.network.mesh_port, mesh=mesh)

        if wait > 0:
            results = self.health_checker.wait_for_ready(check, timeout=wait, sleep=self.sleep)
        else:
            results = check()
        if save_report:
            results["report_file"] = str(self.health_checker.save_health_report(results))
        return results

    # ------------------------------------------------------------------
    # 플릿 적용
    # ------------------------------------------------------------------

    def _apply_one(self, node: Node, fn: Callable[[Node, Connection], Any]) -> Any:
        """노드 1개: 연결 -> 작업 -> 연결 해제"""
        conn = self.connection_manager.connect(self.connection_config(node))
        try:
            return fn(node, conn)
        finally:
            conn.close()

    def apply_to_fleet(self, operation: str, fn: Callable[[Node, Connection], Any],
                       nodes: Optional[List[Node]] = None) -> FleetResult:
        """모든 노드에 작업 적용

        호스트별 실패는 수집만 하고 나머지 호스트를 계속 진행한다.
        성공한 호스트가 하나도 없으면 FleetApplyError 를 발생시킨다.
        """
        nodes = list(self.nodes if nodes is None else nodes)
        if not nodes:
            raise ConfigError("no nodes configured for this cluster")

        result = FleetResult(operation=operation)
        started = time.monotonic()
        workers = max(1, min(self.config.fleet.max_workers, len(nodes)))
        self.logger.info(f"{operation}: applying to {len(nodes)} node(s) with {workers} worker(s)")

        def collect(node: Node, run: Callable[[], Any]):
            try:
                value = run()
            except MeshError as e:
                self.logger.error(f"[{node.name}] {operation} failed: {e}")
                console.print(f"  [red]✗ {node.name}: {e}[/red]")
                result.add_failure(node.name, e)
            else:
                self.logger.info(f"[{node.name}] {operation} succeeded")
                console.print(f"  [green]✓ {node.name}[/green]")
                result.add_success(node.name, value)

        if workers == 1:
            for index, node in enumerate(nodes):
                if index and self.uses_bastion and self.config.fleet.inter_host_delay > 0:
                    self.sleep(self.config.fleet.inter_host_delay)
                collect(node, lambda: self._apply_one(node, fn))
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fleet") as pool:
                futures = [(node, pool.submit(self._apply_one, node, fn)) for node in nodes]
                for node, future in futures:
                    collect(node, future.result)

        result.duration = time.monotonic() - started
        self.logger.info(
            f"{operation}: {result.success_count} succeeded, {result.fail_count} failed "
            f"({result.duration:.1f}s)"
        )
        if not result.ok:
            raise FleetApplyError(result)
        return result

    def _record(self, result: FleetResult, details: Dict[str, Any]):
        self.recorder.record(OperationRecord.from_fleet(self.cluster, result, details))

    # ------------------------------------------------------------------
    # join / leave
    # ------------------------------------------------------------------

    def reserved_ranges(self) -> List[str]:
        """주소 할당 시 건너뛸 범위 (인프라, 노드 범위, 노드 메시 IP)"""
        network = self.config.network
        ranges = [r for r in (network.infrastructure_range, network.node_range) if r]
        ranges.extend(node.mesh_ip for node in self.nodes if node.mesh_ip)
        return ranges

    def allocate_ip(self) -> str:
        return self.registry.next_available_ip(
            self.cluster, self.config.network.subnet_cidr, self.reserved_ranges())

    def _resolve_join_identity(self, label: str, vpn_ip: Optional[str],
                               public_key: str) -> Dict[str, Any]:
        """레지스트리 기준 IP 결정 및 중복 확인 (호스트 작업 전)"""
        previous = None
        if label:
            try:
                previous = self.registry.get_by_label(self.cluster, label)
            except PeerNotFoundError:
                previous = None

        try:
            owner = self.registry.get_by_public_key(self.cluster, public_key)
        except PeerNotFoundError:
            owner = None
        if owner is not None and (previous is None or owner.public_key != previous.public_key):
            raise DuplicateKeyError(public_key)

        if not vpn_ip:
            if previous is not None:
                vpn_ip = previous.vpn_ip
                self.logger.info(f"Reusing VPN IP {vpn_ip} of existing peer '{label}'")
            else:
                vpn_ip = self.allocate_ip()
        else:
            try:
                holder = self.registry.get_by_ip(self.cluster, vpn_ip)
            except PeerNotFoundError:
                holder = None
            if holder is not None and (previous is None or holder.public_key != previous.public_key):
                raise DuplicateAddressError(vpn_ip)

        return {"vpn_ip": vpn_ip, "previous": previous}

    def join(self, label: str = "", vpn_ip: Optional[str] = None,
             public_key: Optional[str] = None, machine: str = "",
             output_path: Optional[str] = None) -> JoinResult:
        """로컬 머신을 메시에 피어로 추가

        Args:
            label: 피어 이름 (같은 라벨로 재실행 시 IP 재사용)
            vpn_ip: 지정 IP (없으면 자동 할당)
            public_key: 기존 공개키 (없으면 새 키 쌍 생성)
            machine: 머신 식별자
            output_path: 클라이언트 설정 저장 경로
        """
        self.logger.info(f"=== Join started (cluster={self.cluster}, label={label or '-'}) ===")
        self.probe_bastion()

        private_key = None
        if public_key:
            if not is_valid_wireguard_key(public_key):
                raise PeerValidationError(f"invalid public key: {public_key!r}")
        else:
            pair = self.key_generator.generate()
            private_key, public_key = pair.private_key, pair.public_key

        identity = self._resolve_join_identity(label, vpn_ip, public_key)
        vpn_ip = identity["vpn_ip"]
        previous: Optional[RegisteredPeer] = identity["previous"]

        peer = PeerConfig(
            public_key=public_key,
            allowed_ips=[f"{vpn_ip}/32"],
            keepalive=self.config.network.keepalive,
            label=label,
        )
        peer.validate()

        # 레지스트리 갱신 (같은 라벨의 이전 항목은 새 키/IP 로 교체)
        replaced = previous is not None and (
            previous.public_key != public_key or previous.vpn_ip != vpn_ip)
        if previous is None or replaced:
            if replaced:
                self.registry.unregister(self.cluster, previous.public_key)
            self.registry.register(self.cluster, RegisteredPeer(
                public_key=public_key,
                vpn_ip=vpn_ip,
                label=label,
                allowed_ips=list(peer.allowed_ips),
                machine=machine,
            ))
        stale_key = previous.public_key if replaced and previous.public_key != public_key else ""

        def add(node: Node, conn: Connection) -> str:
            self.config_manager.add_peer(conn, peer, replaces=stale_key)
            try:
                return self.config_manager.get_public_key(conn)
            except RemoteCommandError as e:
                self.logger.warning(f"[{node.name}] Could not read node public key: {e}")
                return ""

        console.print(f"\n[bold cyan]피어 추가 중: {vpn_ip}[/bold cyan]")
        try:
            fleet = self.apply_to_fleet("join", add)
        except FleetApplyError as e:
            self._record(e.result, {"vpn_ip": vpn_ip, "label": label})
            if previous is None or replaced:
                self.registry.unregister(self.cluster, public_key)
            if replaced:
                self.registry.register(self.cluster, previous)
            raise

        self._record(fleet, {"vpn_ip": vpn_ip, "label": label})

        client_config = self.client_config.render(
            cluster=self.cluster,
            vpn_ip=vpn_ip,
            private_key=private_key,
            nodes=self.nodes,
            node_keys={name: key for name, key in fleet.results.items() if key},
            generated_at=utc_now(),
        )
        if output_path:
            self.client_config.write(client_config, output_path)

        self.logger.info(f"=== Join completed: {vpn_ip} ({fleet.success_count}/{fleet.total} nodes) ===")
        return JoinResult(
            vpn_ip=vpn_ip,
            public_key=public_key,
            private_key=private_key,
            label=label,
            client_config=client_config,
            fleet=fleet,
        )

    def resolve_public_key(self, vpn_ip: Optional[str] = None, label: Optional[str] = None,
                           public_key: Optional[str] = None) -> Dict[str, str]:
        """leave 대상 공개키 결정

        순서: 지정 키 -> 레지스트리(라벨/IP) -> 노드 피어 덤프 -> 로컬 인터페이스 IP
        """
        if public_key:
            try:
                return {"public_key": public_key,
                        "vpn_ip": self.registry.get_by_public_key(self.cluster, public_key).vpn_ip}
            except PeerNotFoundError:
                return {"public_key": public_key, "vpn_ip": vpn_ip or ""}

        if label:
            peer = self.registry.get_by_label(self.cluster, label)
            return {"public_key": peer.public_key, "vpn_ip": peer.vpn_ip}

        if not vpn_ip:
            vpn_ip = self.network_checker.find_local_ip_in_subnet(self.config.network.subnet_cidr)
            if not vpn_ip:
                raise ConfigError("cannot determine VPN IP; pass --ip, --label or --public-key")
            self.logger.info(f"Detected local VPN IP {vpn_ip}")

        try:
            peer = self.registry.get_by_ip(self.cluster, vpn_ip)
            return {"public_key": peer.public_key, "vpn_ip": vpn_ip}
        except PeerNotFoundError:
            self.logger.info(f"{vpn_ip} not in registry, querying nodes")

        for node in self.nodes:
            try:
                key = self._apply_one(node, lambda _n, conn: self.config_manager.find_public_key_by_ip(conn, vpn_ip))
            except MeshError as e:
                self.logger.warning(f"[{node.name}] Peer lookup failed: {e}")
                continue
            if key:
                return {"public_key": key, "vpn_ip": vpn_ip}

        raise PeerNotFoundError("vpn_ip", vpn_ip)

    def leave(self, vpn_ip: Optional[str] = None, label: Optional[str] = None,
              public_key: Optional[str] = None) -> LeaveResult:
        """메시에서 피어 제거 (모든 노드 -> 레지스트리)"""
        self.logger.info(f"=== Leave started (cluster={self.cluster}) ===")
        self.probe_bastion()

        target = self.resolve_public_key(vpn_ip, label, public_key)
        key = target["public_key"]

        console.print(f"\n[bold cyan]피어 제거 중: {target['vpn_ip'] or key[:8]}[/bold cyan]")
        try:
            fleet = self.apply_to_fleet("leave", lambda _node, conn: self.config_manager.remove_peer(conn, key))
        except FleetApplyError as e:
            self._record(e.result, target)
            raise

        unregistered = self.registry.unregister(self.cluster, key)
        self._record(fleet, target)
        self.logger.info(f"=== Leave completed ({fleet.success_count}/{fleet.total} nodes) ===")
        return LeaveResult(vpn_ip=target["vpn_ip"], public_key=key, fleet=fleet, unregistered=unregistered)

    def list_peers(self) -> List[RegisteredPeer]:
        return self.registry.list(self.cluster)
