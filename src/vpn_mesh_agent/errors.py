"""
예외 정의 모듈
VPN 메시 서브시스템에서 발생하는 오류 계층
"""

from typing import Optional


class MeshError(Exception):
    """VPN 메시 기본 예외"""


class SSHConnectionError(MeshError):
    """재시도 후에도 호스트에 연결할 수 없음 (bastion 경유 포함)"""

    def __init__(self, host: str, cause: Optional[BaseException] = None, attempts: int = 0):
        self.host = host
        self.cause = cause
        self.attempts = attempts
        message = f"failed to connect to {host}"
        if attempts:
            message += f" after {attempts} attempt(s)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class RemoteCommandError(MeshError):
    """원격 명령이 0이 아닌 종료 코드를 반환"""

    def __init__(self, host: str, command: str, exit_status: int, output: str = ""):
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.output = output
        summary = output.strip().splitlines()[-1] if output.strip() else "no output"
        super().__init__(f"command on {host} exited with {exit_status}: {summary}")


class BastionUnreachableError(MeshError):
    """노드 작업 전 bastion 상태 확인 실패"""

    def __init__(self, host: str, port: int, reason: str = ""):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"bastion {host}:{port} is unreachable" + (f": {reason}" if reason else ""))


class PeerValidationError(MeshError):
    """피어 설정 값이 유효하지 않음"""


class PeerApplyError(MeshError):
    """연결 후 특정 호스트에서 원격 재구성 실패"""

    def __init__(self, host: str, cause: BaseException):
        self.host = host
        self.cause = cause
        super().__init__(f"peer apply failed on {host}: {cause}")


class RegistryError(MeshError):
    """피어 레지스트리 오류"""


class DuplicateKeyError(RegistryError):
    """이미 등록된 공개키"""

    def __init__(self, public_key: str):
        self.public_key = public_key
        super().__init__(f"peer with public key {public_key} is already registered")


class DuplicateAddressError(RegistryError):
    """이미 할당된 VPN IP"""

    def __init__(self, vpn_ip: str):
        self.vpn_ip = vpn_ip
        super().__init__(f"VPN IP {vpn_ip} is already assigned")


class AddressSpaceExhaustedError(RegistryError):
    """서브넷에 할당 가능한 주소가 없음"""

    def __init__(self, subnet: str):
        self.subnet = subnet
        super().__init__(f"no available IP addresses in subnet {subnet}")


class PeerNotFoundError(RegistryError):
    """피어를 찾을 수 없음"""

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"peer with {field} {value!r} not found")


class KeyGenerationError(MeshError):
    """키 생성 실패 (난수 소스 오류 등)"""


class FleetApplyError(MeshError):
    """모든 호스트에서 작업 실패"""

    def __init__(self, result):
        self.result = result
        super().__init__(
            f"{result.operation} failed on all {result.fail_count} host(s)"
        )


class HeadscaleError(MeshError):
    """Headscale API 오류"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthKeyError(HeadscaleError):
    """인증 키 발급 실패"""


class MeshConnectError(MeshError):
    """메시 핸드셰이크 실패 또는 타임아웃"""


class ProxyStartError(MeshError):
    """SOCKS5 프록시 시작 실패"""


class DaemonError(MeshError):
    """데몬 관리 오류"""


class DaemonAlreadyRunningError(DaemonError):
    """같은 클러스터의 데몬이 이미 실행 중"""

    def __init__(self, cluster_id: str, pid: Optional[int] = None):
        self.cluster_id = cluster_id
        self.pid = pid
        message = f"daemon for cluster {cluster_id} is already running"
        if pid:
            message += f" (PID: {pid})"
        super().__init__(message)


class DaemonStartError(DaemonError):
    """데몬이 준비 상태에 도달하지 못함"""


class ConfigError(MeshError):
    """설정 오류"""
