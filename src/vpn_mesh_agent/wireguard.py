"""
WireGuard 설정 관리 모듈
원격 노드의 피어를 서비스 재시작 없이 원자적/idempotent 하게 추가 및 제거

원격 스크립트는 jinja2 템플릿으로 생성하며, 외부 입력값은 모두 shlex.quote 를
거친 셸 변수로만 전달된다.
"""

import re
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional

from jinja2 import Environment, StrictUndefined

from .connection import Connection
from .errors import PeerApplyError, RemoteCommandError
from .logger import get_logger
from .models import PeerConfig, is_valid_wireguard_key

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")

_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)
_env.filters["shq"] = lambda value: shlex.quote(str(value))


def sanitize_label(label: str) -> str:
    """라벨을 한 줄 주석으로 쓸 수 있게 정리"""
    return _CONTROL_CHARS.sub(" ", label or "").strip()


@dataclass
class WireGuardTool:
    """원격 호스트의 WireGuard 명령 규약

    설정 파일 경로, 인터페이스 이름, 명령 형태를 한곳에 모아 두고
    다른 도구로 교체할 수 있게 한다.
    """
    config_path: str = "/etc/wireguard/wg0.conf"
    interface: str = "wg0"
    public_key_path: str = "/etc/wireguard/publickey"
    use_sudo: bool = True

    @property
    def sudo(self) -> str:
        return "sudo " if self.use_sudo else ""

    def dump_command(self) -> str:
        """현재 피어 덤프 출력"""
        return f"{self.sudo}wg show {shlex.quote(self.interface)} dump"

    def read_config_command(self) -> str:
        return f"{self.sudo}cat {shlex.quote(self.config_path)}"

    def public_key_command(self) -> str:
        """노드 자신의 공개키 파일 출력"""
        return f"{self.sudo}cat {shlex.quote(self.public_key_path)}"

    def validate_command(self) -> str:
        """설정 파일 문법 검증 ($CONFIG 변수 사용)"""
        return f'{self.sudo}wg-quick strip "$CONFIG" > /dev/null'

    def sync_command(self) -> str:
        """실행 중인 인터페이스에 차이만 적용 (strip-and-sync)"""
        iface = shlex.quote(self.interface)
        return f"{self.sudo}wg-quick strip {iface} | {self.sudo}wg syncconf {iface} /dev/stdin"

    def listen_check_command(self, port: int) -> str:
        """UDP 수신 포트 확인 (LISTENING / NOT_LISTENING 출력)"""
        return f"ss -uln | grep -q ':{int(port)} ' && echo LISTENING || echo NOT_LISTENING"

    def ping_command(self, ip: str) -> str:
        """메시 IP 도달성 확인 (PING_OK / PING_FAIL 출력)"""
        return f"ping -c 1 -W 5 {shlex.quote(ip)} > /dev/null 2>&1 && echo PING_OK || echo PING_FAIL"


# [Peer] 블록 정리용 awk 프로그램
# - 리터럴 "\n" 이 들어간 깨진 줄과 빈 줄 제거
# - pubkey 또는 oldkey 가 같거나 AllowedIPs 가 peerip 를 점유한 [Peer] 블록 제거
# - 블록 사이에는 빈 줄 하나
STRIP_AWK = r"""
function flush() {
  if (n == 0) return
  if (!drop) {
    if (printed) print ""
    for (i = 1; i <= n; i++) print buf[i]
    printed = 1
  }
  n = 0
  drop = 0
}
/\\n/ { next }
/^[ \t\r]*$/ { next }
/^[ \t]*\[/ {
  flush()
  inpeer = ($0 ~ /^[ \t]*\[Peer\][ \t\r]*$/)
}
{
  line = $0
  gsub(/[ \t\r]/, "", line)
  if (inpeer) {
    if (pubkey != "" && line == "PublicKey=" pubkey) drop = 1
    if (oldkey != "" && line == "PublicKey=" oldkey) drop = 1
    if (peerip != "" && index(line, "AllowedIPs=") == 1) {
      cnt = split(substr(line, 12), ips, ",")
      for (j = 1; j <= cnt; j++) {
        if (ips[j] == peerip "/32" || ips[j] == peerip) drop = 1
      }
    }
  }
  buf[++n] = $0
}
END { flush() }
""".strip()


PEER_SCRIPT = _env.from_string("""set -euo pipefail
CONFIG={{ tool.config_path | shq }}
PUBKEY={{ public_key | shq }}
PEER_IP={{ peer_ip | shq }}
OLD_PUBKEY={{ replaces | shq }}
{%- if add %}
LABEL={{ label | shq }}
ALLOWED_IPS={{ allowed_ips | shq }}
KEEPALIVE={{ keepalive | shq }}
ENDPOINT={{ endpoint | shq }}
PSK={{ preshared_key | shq }}
{%- endif %}
BACKUP="${CONFIG}.backup-$(date +%Y%m%d-%H%M%S)"
TMP="$(mktemp)"
trap 'rm -f "$TMP"' EXIT

{{ sudo }}test -f "$CONFIG"
{{ sudo }}cp -p "$CONFIG" "$BACKUP"

{{ sudo }}cat "$CONFIG" | awk -v pubkey="$PUBKEY" -v peerip="$PEER_IP" -v oldkey="$OLD_PUBKEY" {{ awk | shq }} > "$TMP"
{{ sudo }}cp "$TMP" "$CONFIG"
{%- if add %}

{
  printf '\\n[Peer]\\n'
  if [ -n "$LABEL" ]; then printf '# %s\\n' "$LABEL"; fi
  printf 'PublicKey = %s\\n' "$PUBKEY"
  if [ -n "$PSK" ]; then printf 'PresharedKey = %s\\n' "$PSK"; fi
  printf 'AllowedIPs = %s\\n' "$ALLOWED_IPS"
  if [ -n "$ENDPOINT" ]; then printf 'Endpoint = %s\\n' "$ENDPOINT"; fi
  if [ "$KEEPALIVE" != "0" ]; then printf 'PersistentKeepalive = %s\\n' "$KEEPALIVE"; fi
} | {{ sudo }}tee -a "$CONFIG" > /dev/null
{%- endif %}

if ! {{ validate }}; then
  {{ sudo }}cp -p "$BACKUP" "$CONFIG"
  echo "configuration validation failed, restored $BACKUP" >&2
  exit 3
fi

{{ sync }}
echo "BACKUP=$BACKUP"
""")


def render_peer_script(tool: WireGuardTool, public_key: str, peer_ip: str = "",
                       peer: Optional[PeerConfig] = None, replaces: str = "") -> str:
    """피어 추가(peer 지정 시) 또는 제거 스크립트 생성

    replaces 는 같은 스크립트에서 함께 제거할 이전 공개키다.
    """
    context = {
        "tool": tool,
        "sudo": tool.sudo,
        "public_key": public_key,
        "peer_ip": peer_ip,
        "replaces": replaces or "",
        "awk": STRIP_AWK,
        "validate": tool.validate_command(),
        "sync": tool.sync_command(),
        "add": peer is not None,
    }
    if peer is not None:
        context.update({
            "label": sanitize_label(peer.label),
            "allowed_ips": ", ".join(peer.allowed_ips),
            "keepalive": int(peer.keepalive),
            "endpoint": peer.endpoint,
            "preshared_key": peer.preshared_key,
        })
    return PEER_SCRIPT.render(**context)


def parse_peer_blocks(config_text: str) -> List[Dict[str, str]]:
    """설정 파일 텍스트에서 [Peer] 블록 파싱"""
    peers = []
    current = None
    for raw in config_text.splitlines():
        line = raw.strip()
        if line.startswith("["):
            current = {} if line == "[Peer]" else None
            if current is not None:
                peers.append(current)
            continue
        if current is None or not line:
            continue
        if line.startswith("#"):
            current.setdefault("label", line.lstrip("#").strip())
            continue
        key, sep, value = line.partition("=")
        if sep:
            current[key.strip()] = value.strip()
    return peers


def parse_wg_dump(output: str) -> List[Dict[str, str]]:
    """`wg show <iface> dump` 출력에서 피어 줄 파싱

    첫 줄은 인터페이스 정보(4개 필드), 이후 줄은 피어(8개 필드)다.
    """
    peers = []
    for line in output.strip().splitlines():
        fields = line.split("\t")
        if len(fields) < 8:
            continue
        peers.append({
            "public_key": fields[0],
            "endpoint": "" if fields[2] == "(none)" else fields[2],
            "allowed_ips": fields[3],
            "latest_handshake": fields[4],
            "transfer_rx": fields[5],
            "transfer_tx": fields[6],
            "keepalive": fields[7],
        })
    return peers


class ConfigManager:
    """원격 WireGuard 설정 관리 클래스"""

    def __init__(self, tool: Optional[WireGuardTool] = None):
        self.tool = tool or WireGuardTool()
        self.logger = get_logger()

    def add_peer(self, conn: Connection, peer: PeerConfig, replaces: str = "") -> str:
        """피어 추가 (같은 키/주소의 기존 블록을 대체, 재실행해도 안전)

        Args:
            conn: 노드 연결
            peer: 추가할 피어
            replaces: 함께 제거할 이전 공개키 (같은 라벨의 키 교체 시)

        Returns:
            str: 원격 백업 파일 경로
        """
        peer.validate()
        if replaces and not is_valid_wireguard_key(replaces):
            raise PeerApplyError(conn.host, ValueError(f"invalid public key: {replaces!r}"))
        if replaces == peer.public_key:
            replaces = ""
        script = render_peer_script(self.tool, peer.public_key, peer.address, peer, replaces)
        self.logger.info(f"[{conn.host}] Adding peer {peer.label or peer.public_key[:8]} ({peer.address})")
        backup = self._run(conn, script)
        self.logger.info(f"[{conn.host}] Peer {peer.public_key[:8]}... applied")
        return backup

    def remove_peer(self, conn: Connection, public_key: str) -> str:
        """공개키로 피어 제거 (없으면 변경 없이 재동기화만 수행)"""
        if not is_valid_wireguard_key(public_key):
            raise PeerApplyError(conn.host, ValueError(f"invalid public key: {public_key!r}"))
        script = render_peer_script(self.tool, public_key)
        self.logger.info(f"[{conn.host}] Removing peer {public_key[:8]}...")
        backup = self._run(conn, script)
        self.logger.info(f"[{conn.host}] Peer {public_key[:8]}... removed")
        return backup

    def _run(self, conn: Connection, script: str) -> str:
        try:
            output = conn.execute_script(script)
        except RemoteCommandError as e:
            self.logger.error(f"[{conn.host}] Peer reconfiguration failed: {e}")
            raise PeerApplyError(conn.host, e) from e

        for line in reversed(output.strip().splitlines()):
            if line.startswith("BACKUP="):
                return line[len("BACKUP="):]
        return ""

    def read_config(self, conn: Connection) -> str:
        return conn.execute(self.tool.read_config_command())

    def peer_count(self, conn: Connection, public_key: str) -> int:
        """설정 파일에서 해당 공개키를 가진 [Peer] 블록 수"""
        blocks = parse_peer_blocks(self.read_config(conn))
        return sum(1 for block in blocks if block.get("PublicKey") == public_key)

    def list_peers(self, conn: Connection) -> List[Dict[str, str]]:
        """실행 중인 인터페이스의 피어 목록"""
        return parse_wg_dump(conn.execute(self.tool.dump_command()))

    def find_public_key_by_ip(self, conn: Connection, vpn_ip: str) -> Optional[str]:
        """AllowedIPs 에 vpn_ip/32 를 가진 피어의 공개키"""
        target = f"{vpn_ip}/32"
        for peer in self.list_peers(conn):
            allowed = [ip.strip() for ip in peer["allowed_ips"].split(",")]
            if target in allowed:
                return peer["public_key"]
        return None

    def get_public_key(self, conn: Connection) -> str:
        """노드의 WireGuard 공개키"""
        return conn.execute(self.tool.public_key_command()).strip()

    def is_listening(self, conn: Connection, port: int) -> bool:
        """노드가 WireGuard UDP 포트에서 수신 중인지"""
        output = conn.execute(self.tool.listen_check_command(port))
        return "NOT_LISTENING" not in output and "LISTENING" in output

    def ping(self, conn: Connection, ip: str) -> bool:
        """노드에서 다른 메시 IP 로 ping"""
        return "PING_OK" in conn.execute(self.tool.ping_command(ip))
