"""
네트워크 체크 모듈
포트, 로컬 인터페이스 확인 기능
"""

import ipaddress
import socket
import netifaces
from typing import Tuple, Optional
from .logger import get_logger


class NetworkChecker:
    """네트워크 연결성 확인 클래스"""

    def __init__(self, debug: bool = False):
        self.debug = debug
        self.logger = get_logger()

    def check_port(self, host: str, port: int, timeout: float = 5) -> Tuple[bool, str]:
        """TCP 포트 연결 테스트"""
        self.logger.debug(f"Checking port {host}:{port}...")
        try:
            with socket.create_connection((host, port), timeout=timeout):
                pass
            self.logger.debug(f"✓ {host}:{port} is open")
            return True, f"✓ {host}:{port} 연결 성공"
        except socket.gaierror:
            self.logger.warning(f"✗ Cannot resolve {host}")
            return False, f"✗ {host} 호스트를 찾을 수 없습니다"
        except socket.timeout:
            self.logger.warning(f"✗ {host}:{port} timed out after {timeout}s")
            return False, f"✗ {host}:{port} 타임아웃"
        except OSError as e:
            self.logger.warning(f"✗ {host}:{port} is closed: {e}")
            return False, f"✗ {host}:{port} 연결 실패 ({e})"

    def check_interface(self, interface: str) -> Tuple[bool, str]:
        """로컬 네트워크 인터페이스 존재 확인"""
        if interface in netifaces.interfaces():
            self.logger.debug(f"✓ Interface {interface} exists")
            return True, f"✓ {interface} 인터페이스 확인"
        self.logger.warning(f"✗ Interface {interface} not found")
        return False, f"✗ {interface} 인터페이스를 찾을 수 없습니다"

    def get_interface_ip(self, interface: str) -> Optional[str]:
        """인터페이스의 IPv4 주소"""
        if interface not in netifaces.interfaces():
            return None
        addrs = netifaces.ifaddresses(interface).get(netifaces.AF_INET, [])
        for addr_info in addrs:
            ip = addr_info.get("addr")
            if ip:
                self.logger.debug(f"Interface {interface} IP: {ip}")
                return ip
        return None

    def find_local_ip_in_subnet(self, subnet_cidr: str) -> Optional[str]:
        """로컬 인터페이스 중 subnet 에 속한 IPv4 주소 검색"""
        network = ipaddress.ip_network(subnet_cidr, strict=False)
        for interface in netifaces.interfaces():
            for addr_info in netifaces.ifaddresses(interface).get(netifaces.AF_INET, []):
                ip = addr_info.get("addr")
                if ip and ipaddress.ip_address(ip) in network:
                    self.logger.debug(f"Found local mesh address {ip} on {interface}")
                    return ip
        return None
