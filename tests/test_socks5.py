"""
SOCKS5 프록시 테스트
로컬 에코 서버를 대상으로 CONNECT 전달 확인
"""

import socket
import struct
import threading

import pytest

from vpn_mesh_agent.errors import ProxyStartError
from vpn_mesh_agent.socks5 import (
    REP_COMMAND_NOT_SUPPORTED,
    REP_CONNECTION_REFUSED,
    Socks5Proxy,
    recv_exact,
    socks5_connect,
)


@pytest.fixture
def echo_server():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(5)

    def serve():
        while True:
            try:
                conn, _addr = server.accept()
            except OSError:
                return
            with conn:
                while True:
                    data = conn.recv(4096)
                    if not data:
                        break
                    conn.sendall(data)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield server.getsockname()[1]
    server.close()


def direct_dial(host, port, timeout):
    return socket.create_connection((host, port), timeout=timeout)


@pytest.fixture
def proxy():
    proxy = Socks5Proxy(direct_dial)
    proxy.start(0)
    yield proxy
    proxy.stop()


def test_proxy_relays_data(proxy, echo_server):
    """CONNECT 후 양방향 전달"""
    assert proxy.running == True
    assert proxy.port > 0

    sock = socks5_connect("127.0.0.1", proxy.port, "127.0.0.1", echo_server, timeout=5)
    try:
        sock.settimeout(5)
        sock.sendall(b"hello mesh")
        assert recv_exact(sock, 10) == b"hello mesh"
    finally:
        sock.close()


def test_proxy_domain_address(proxy, echo_server):
    """도메인 주소 타입"""
    sock = socks5_connect("127.0.0.1", proxy.port, "localhost", echo_server, timeout=5)
    try:
        sock.settimeout(5)
        sock.sendall(b"ping")
        assert recv_exact(sock, 4) == b"ping"
    finally:
        sock.close()


def test_proxy_rejects_unsupported_command(proxy):
    """BIND 등 CONNECT 외 명령은 0x07 응답"""
    sock = socket.create_connection(("127.0.0.1", proxy.port), timeout=5)
    try:
        sock.sendall(b"\x05\x01\x00")
        assert recv_exact(sock, 2) == b"\x05\x00"
        sock.sendall(b"\x05\x02\x00\x01" + socket.inet_aton("127.0.0.1") + struct.pack("!H", 80))
        reply = recv_exact(sock, 10)
        assert reply[1] == REP_COMMAND_NOT_SUPPORTED
    finally:
        sock.close()


def test_proxy_reports_refused(proxy):
    """대상 연결 거부는 0x05 응답 -> ConnectionRefusedError"""
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    closed_port = probe.getsockname()[1]
    probe.close()

    with pytest.raises(ConnectionRefusedError):
        socks5_connect("127.0.0.1", proxy.port, "127.0.0.1", closed_port, timeout=5)
    assert REP_CONNECTION_REFUSED == 0x05


def test_proxy_rejects_auth_required_client(proxy):
    """무인증 방식을 제시하지 않으면 0xFF"""
    sock = socket.create_connection(("127.0.0.1", proxy.port), timeout=5)
    try:
        sock.sendall(b"\x05\x01\x02")
        assert recv_exact(sock, 2) == b"\x05\xff"
    finally:
        sock.close()


def test_proxy_port_in_use(proxy):
    """사용 중인 포트에 바인드하면 ProxyStartError"""
    other = Socks5Proxy(direct_dial)
    with pytest.raises(ProxyStartError):
        other.start(proxy.port)
    assert other.running == False


def test_stop_is_idempotent():
    """중지 두 번 호출해도 안전"""
    proxy = Socks5Proxy(direct_dial)
    proxy.start(0)
    proxy.stop()
    proxy.stop()
    assert proxy.running == False
    assert proxy.port == 0
