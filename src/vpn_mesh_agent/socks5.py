"""
SOCKS5 프록시 모듈
메시 세션을 통해 TCP 연결을 전달하는 로컬 SOCKS5 (CONNECT 전용) 서버 및 클라이언트 헬퍼
"""

import ipaddress
import socket
import socketserver
import struct
import threading
from typing import Callable, Optional

from .errors import ProxyStartError
from .logger import get_logger

SOCKS_VERSION = 5
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REP_SUCCEEDED = 0x00
REP_GENERAL_FAILURE = 0x01
REP_CONNECTION_REFUSED = 0x05
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

HANDSHAKE_TIMEOUT = 10.0
DIAL_TIMEOUT = 30.0
BUFFER_SIZE = 32 * 1024

Dialer = Callable[[str, int, float], socket.socket]


class Socks5Error(OSError):
    """SOCKS5 프로토콜 오류"""

    def __init__(self, message: str, reply: int = REP_GENERAL_FAILURE):
        self.reply = reply
        super().__init__(message)


def recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise EOFError("connection closed during SOCKS5 handshake")
        data += chunk
    return data


def _reply(code: int) -> bytes:
    return struct.pack("!BBBB4sH", SOCKS_VERSION, code, 0, ATYP_IPV4,
                       socket.inet_aton("127.0.0.1"), 0)


def read_address(sock: socket.socket, atyp: int) -> str:
    if atyp == ATYP_IPV4:
        return socket.inet_ntoa(recv_exact(sock, 4))
    if atyp == ATYP_DOMAIN:
        length = recv_exact(sock, 1)[0]
        return recv_exact(sock, length).decode("idna")
    if atyp == ATYP_IPV6:
        return socket.inet_ntop(socket.AF_INET6, recv_exact(sock, 16))
    raise Socks5Error(f"unsupported address type {atyp}", REP_ADDRESS_TYPE_NOT_SUPPORTED)


def relay(left: socket.socket, right: socket.socket):
    """양방향 전달, 한쪽이 닫히면 반대쪽 쓰기 종료"""

    def pump(src: socket.socket, dst: socket.socket):
        try:
            while True:
                data = src.recv(BUFFER_SIZE)
                if not data:
                    break
                dst.sendall(data)
        except OSError:
            pass
        finally:
            try:
                dst.shutdown(socket.SHUT_WR)
            except OSError:
                pass

    upstream = threading.Thread(target=pump, args=(left, right), daemon=True)
    upstream.start()
    pump(right, left)
    upstream.join()


class _Socks5Handler(socketserver.BaseRequestHandler):

    def handle(self):
        proxy: "Socks5Proxy" = self.server.proxy
        client = self.request
        client.settimeout(HANDSHAKE_TIMEOUT)
        try:
            target = self._handshake(client, proxy)
        except (EOFError, socket.timeout) as e:
            proxy.logger.debug(f"SOCKS5 handshake aborted: {e}")
            return
        except OSError as e:
            proxy.logger.debug(f"SOCKS5 handshake failed: {e}")
            return
        if target is None:
            return

        client.settimeout(None)
        target.settimeout(None)
        try:
            relay(client, target)
        finally:
            target.close()

    def _handshake(self, client: socket.socket, proxy: "Socks5Proxy") -> Optional[socket.socket]:
        version, nmethods = recv_exact(client, 2)
        if version != SOCKS_VERSION:
            return None
        methods = recv_exact(client, nmethods)
        if 0x00 not in methods:
            client.sendall(bytes([SOCKS_VERSION, 0xFF]))
            return None
        client.sendall(bytes([SOCKS_VERSION, 0x00]))

        version, cmd, _rsv, atyp = recv_exact(client, 4)
        if cmd != CMD_CONNECT:
            client.sendall(_reply(REP_COMMAND_NOT_SUPPORTED))
            return None
        try:
            host = read_address(client, atyp)
        except Socks5Error as e:
            client.sendall(_reply(e.reply))
            return None
        port = struct.unpack("!H", recv_exact(client, 2))[0]

        try:
            target = proxy.dial(host, port, DIAL_TIMEOUT)
        except ConnectionRefusedError as e:
            proxy.logger.debug(f"SOCKS5 dial {host}:{port} refused: {e}")
            client.sendall(_reply(REP_CONNECTION_REFUSED))
            return None
        except OSError as e:
            proxy.logger.debug(f"SOCKS5 dial {host}:{port} failed: {e}")
            client.sendall(_reply(getattr(e, "reply", REP_GENERAL_FAILURE)))
            return None

        client.sendall(_reply(REP_SUCCEEDED))
        proxy.logger.debug(f"SOCKS5 CONNECT {host}:{port}")
        return target


class _ThreadingServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class Socks5Proxy:
    """로컬 SOCKS5 프록시

    모든 CONNECT 요청은 dial 콜백(메시 세션)으로 전달된다.
    """

    def __init__(self, dial: Dialer, host: str = "127.0.0.1"):
        self.dial = dial
        self.host = host
        self.logger = get_logger()
        self._server: Optional[_ThreadingServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        if self._server is None:
            return 0
        return self._server.server_address[1]

    def start(self, port: int = 0) -> int:
        """프록시 시작 (port=0 이면 자동 선택), 실제 바인드된 포트 반환"""
        if self._server is not None:
            return self.port
        try:
            server = _ThreadingServer((self.host, port), _Socks5Handler)
        except OSError as e:
            raise ProxyStartError(f"cannot bind SOCKS5 proxy on {self.host}:{port}: {e}") from e
        server.proxy = self
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name="socks5-proxy", daemon=True)
        self._thread.start()
        self.logger.info(f"SOCKS5 proxy listening on {self.host}:{self.port}")
        return self.port

    def stop(self, timeout: float = 5.0):
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("SOCKS5 proxy stopped")


def socks5_connect(proxy_host: str, proxy_port: int, host: str, port: int,
                   timeout: float = DIAL_TIMEOUT) -> socket.socket:
    """SOCKS5 프록시를 통해 host:port 에 TCP 연결"""
    sock = socket.create_connection((proxy_host, proxy_port), timeout=timeout)
    try:
        sock.sendall(bytes([SOCKS_VERSION, 1, 0x00]))
        version, method = recv_exact(sock, 2)
        if version != SOCKS_VERSION or method != 0x00:
            raise Socks5Error("SOCKS5 proxy rejected authentication method")

        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            encoded = host.encode("idna")
            target = bytes([ATYP_DOMAIN, len(encoded)]) + encoded
        else:
            atyp = ATYP_IPV4 if address.version == 4 else ATYP_IPV6
            target = bytes([atyp]) + address.packed
        sock.sendall(bytes([SOCKS_VERSION, CMD_CONNECT, 0x00]) + target + struct.pack("!H", port))

        _version, reply, _rsv, atyp = recv_exact(sock, 4)
        if atyp == ATYP_DOMAIN:
            recv_exact(sock, recv_exact(sock, 1)[0] + 2)
        else:
            recv_exact(sock, (4 if atyp == ATYP_IPV4 else 16) + 2)

        if reply == REP_CONNECTION_REFUSED:
            raise ConnectionRefusedError(f"{host}:{port} refused through SOCKS5 proxy")
        if reply != REP_SUCCEEDED:
            raise Socks5Error(f"SOCKS5 connect to {host}:{port} failed (reply {reply})", reply)
        sock.settimeout(None)
        return sock
    except BaseException:
        sock.close()
        raise
