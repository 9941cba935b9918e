"""
VPN Mesh Agent - 헬스체크 모듈

이 모듈은 다음 기능을 제공합니다:
- bastion TCP 도달성 확인 (노드 작업 전 사전 점검)
- 노드별 SSH 연결 및 WireGuard 인터페이스 상태 확인
- WireGuard 수신 포트 및 노드 간 메시 도달성(ping) 확인
- 헬스 리포트 저장
"""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .connection import ConnectionConfig, ConnectionManager
from .errors import MeshError
from .logger import get_logger
from .models import Node
from .network import NetworkChecker
from .wireguard import ConfigManager


class HealthChecker:
    """메시 헬스체크를 수행하는 클래스"""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None,
                 config_manager: Optional[ConfigManager] = None,
                 network_checker: Optional[NetworkChecker] = None,
                 log_dir: str = "~/.vpn-mesh-agent/logs"):
        """
        Args:
            connection_manager: 노드 SSH 연결에 사용
            config_manager: WireGuard 상태 조회에 사용
            network_checker: bastion 포트 확인에 사용
            log_dir: 리포트 저장 디렉토리
        """
        self.connection_manager = connection_manager or ConnectionManager()
        self.config_manager = config_manager or ConfigManager()
        self.network_checker = network_checker or NetworkChecker()
        self.log_dir = Path(log_dir).expanduser()
        self.logger = get_logger()

    def check_bastion(self, host: str, port: int = 22, timeout: float = 10) -> Dict:
        """bastion SSH 포트 도달성 확인"""
        ok, message = self.network_checker.check_port(host, port, timeout=timeout)
        return {
            "healthy": ok,
            "status": "reachable" if ok else "unreachable",
            "message": message,
        }

    def check_node(self, node: Node, config: ConnectionConfig,
                   listen_port: Optional[int] = None,
                   peer_ips: Optional[List[str]] = None) -> Dict:
        """노드 SSH 연결 및 WireGuard 상태 확인

        Args:
            node: 대상 노드
            config: SSH 연결 설정
            listen_port: 지정 시 WireGuard UDP 수신 포트 확인
            peer_ips: 지정 시 노드에서 각 메시 IP 로 ping

        Returns:
            Dict: healthy, status, message, peers, latency_ms (+ mesh)
        """
        try:
            conn = self.connection_manager.connect(config)
        except MeshError as e:
            self.logger.warning(f"Health check: cannot reach {node.name}: {e}")
            return {"healthy": False, "status": "unreachable", "message": str(e), "peers": 0}

        try:
            started = time.monotonic()
            try:
                peers = self.config_manager.list_peers(conn)
            except MeshError as e:
                self.logger.warning(f"Health check: WireGuard not ready on {node.name}: {e}")
                return {"healthy": False, "status": "wireguard_down", "message": str(e), "peers": 0}
            latency_ms = round((time.monotonic() - started) * 1000, 1)

            result = {
                "healthy": True,
                "status": "ok",
                "message": f"WireGuard 피어 {len(peers)}개",
                "peers": len(peers),
                "latency_ms": latency_ms,
            }

            if listen_port and not self._listening(node, conn, listen_port):
                result.update({
                    "healthy": False,
                    "status": "not_listening",
                    "message": f"WireGuard 가 UDP {listen_port} 포트에서 수신하지 않습니다",
                })
                return result

            if peer_ips:
                mesh = self.check_mesh(node, conn, peer_ips)
                result["mesh"] = mesh
                unreachable = [ip for ip, ok in mesh.items() if not ok]
                if unreachable:
                    result.update({
                        "healthy": False,
                        "status": "mesh_degraded",
                        "message": f"메시 도달 불가: {', '.join(unreachable)}",
                    })
            return result
        finally:
            conn.close()

    def _listening(self, node: Node, conn, port: int) -> bool:
        try:
            return self.config_manager.is_listening(conn, port)
        except MeshError as e:
            self.logger.warning(f"Health check: listen port check failed on {node.name}: {e}")
            return False

    def check_mesh(self, node: Node, conn, peer_ips: List[str]) -> Dict[str, bool]:
        """노드에서 다른 메시 IP 들로의 도달성 (ip -> 성공 여부)"""
        results = {}
        for ip in peer_ips:
            try:
                results[ip] = self.config_manager.ping(conn, ip)
            except MeshError as e:
                self.logger.warning(f"Health check: ping {ip} from {node.name} failed: {e}")
                results[ip] = False
            if not results[ip]:
                self.logger.warning(f"Health check: {ip} unreachable from {node.name}")
        return results

    def check_all(self, nodes: List[Node], config_for: Callable[[Node], ConnectionConfig],
                  bastion: Optional[ConnectionConfig] = None,
                  listen_port: Optional[int] = None, mesh: bool = False) -> Dict:
        """bastion 및 전체 노드 헬스체크

        bastion 이 도달 불가하면 노드 점검은 건너뛴다.
        mesh=True 이면 각 노드에서 다른 노드의 메시 IP 로 ping 한다.
        """
        self.logger.info(f"Running health check on {len(nodes)} node(s)")
        checks: Dict[str, Dict] = {}

        if bastion is not None and bastion.via_bastion:
            checks["bastion"] = self.check_bastion(bastion.bastion_host, bastion.bastion_port)

        if checks.get("bastion", {}).get("healthy", True):
            mesh_ips = [node.mesh_ip for node in nodes if node.mesh_ip] if mesh else []
            for node in nodes:
                peer_ips = [ip for ip in mesh_ips if ip != node.mesh_ip]
                checks[node.name] = self.check_node(node, config_for(node), listen_port, peer_ips)

        results = {
            "timestamp": datetime.now().isoformat(),
            "checks": checks,
            "overall_status": "healthy",
        }

        failed = [name for name, check in checks.items() if not check.get("healthy", False)]
        if failed or not checks:
            results["overall_status"] = "unhealthy"
            results["failed_checks"] = failed

        self.logger.info(f"Health check finished: {results['overall_status']}")
        return results

    def wait_for_ready(self, check: Callable[[], Dict], timeout: float = 300,
                       interval: float = 5, sleep: Callable[[float], None] = time.sleep) -> Dict:
        """check() 결과가 healthy 가 될 때까지 반복

        Returns:
            Dict: 마지막 헬스체크 결과 (timeout 이면 unhealthy 그대로)
        """
        deadline = time.monotonic() + timeout
        while True:
            results = check()
            if results["overall_status"] == "healthy":
                return results
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning(f"Nodes not ready after {timeout:.0f}s: {results.get('failed_checks')}")
                return results
            self.logger.info(f"Waiting for nodes: {results.get('failed_checks')}")
            sleep(min(interval, remaining))

    def save_health_report(self, results: Dict) -> Path:
        """헬스체크 결과를 JSON 파일로 저장"""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        report_file = self.log_dir / f"health_report_{timestamp}.json"

        with open(report_file, "w", encoding="utf-8") as f:
            json.dump(results, f, indent=2, ensure_ascii=False)

        self.logger.info(f"Health report saved: {report_file}")
        return report_file
