"""
VPN Mesh Agent
멀티 클라우드 클러스터 노드를 사설 오버레이 네트워크(VPN 메시)로 연결하는 에이전트

Features:
- Bastion 경유 SSH 원격 실행 및 재시도
- WireGuard 피어 레지스트리 및 주소 할당
- 원자적/idempotent 피어 추가 및 제거
- WireGuard 키 생성
- Headscale/Tailscale 임베디드 클라이언트, SOCKS5 프록시, 데몬 관리
"""

__version__ = "1.0.0"
__author__ = "DevOps Team"
