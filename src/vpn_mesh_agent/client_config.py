"""
클라이언트 설정 생성 모듈
join 결과로 로컬 머신용 WireGuard 설정 파일 생성
"""

import ipaddress
import os
from typing import Dict, List, Optional

from jinja2 import Template

from .logger import get_logger
from .models import Node

PRIVATE_KEY_PLACEHOLDER = "<YOUR_PRIVATE_KEY>"

CLIENT_TEMPLATE = """# WireGuard client configuration
# Cluster: {{ cluster }}
# Generated: {{ generated_at }}

[Interface]
PrivateKey = {{ private_key }}
Address = {{ address }}
{%- if dns %}
DNS = {{ dns }}
{%- endif %}
{% for peer in peers %}
[Peer]
# {{ peer.name }} ({{ peer.provider }})
PublicKey = {{ peer.public_key }}
Endpoint = {{ peer.endpoint }}
AllowedIPs = {{ peer.allowed_ips }}
PersistentKeepalive = {{ keepalive }}
{% endfor -%}
"""


class ClientConfigGenerator:
    """WireGuard 클라이언트 설정 생성 클래스"""

    def __init__(self, subnet_cidr: str = "10.8.0.0/24", mesh_port: int = 51820,
                 keepalive: int = 25, dns: str = "1.1.1.1",
                 extra_allowed_ips: Optional[List[str]] = None):
        self.subnet_cidr = subnet_cidr
        self.mesh_port = mesh_port
        self.keepalive = keepalive
        self.dns = dns
        self.extra_allowed_ips = list(extra_allowed_ips or [])
        self.logger = get_logger()

    def render(self, cluster: str, vpn_ip: str, private_key: Optional[str],
               nodes: List[Node], node_keys: Dict[str, str], generated_at: str) -> str:
        """클라이언트 설정 텍스트 생성

        node_keys 에 공개키가 있는 노드만 [Peer] 로 포함한다.
        """
        prefix = ipaddress.ip_network(self.subnet_cidr, strict=False).prefixlen
        peers = []
        for node in nodes:
            public_key = node_keys.get(node.name)
            if not public_key:
                self.logger.warning(f"No public key for {node.name}, skipping in client config")
                continue
            mesh_ip = node.mesh_ip or node.private_ip
            allowed = [f"{mesh_ip}/32"] + self.extra_allowed_ips
            peers.append({
                "name": node.name,
                "provider": node.provider or "unknown",
                "public_key": public_key,
                "endpoint": f"{node.public_ip}:{self.mesh_port}",
                "allowed_ips": ", ".join(allowed),
            })

        template = Template(CLIENT_TEMPLATE)
        return template.render(
            cluster=cluster,
            generated_at=generated_at,
            private_key=private_key or PRIVATE_KEY_PLACEHOLDER,
            address=f"{vpn_ip}/{prefix}",
            dns=self.dns,
            peers=peers,
            keepalive=self.keepalive,
        )

    def write(self, content: str, output_path: str) -> str:
        """설정 파일 저장 (개인키 포함이므로 0600)"""
        output_path = os.path.expanduser(output_path)
        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fd = os.open(output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
        self.logger.info(f"Client configuration written to {output_path}")
        return output_path
