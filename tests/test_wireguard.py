"""
WireGuard 설정 관리 테스트
원격 스크립트를 로컬 bash 로 실행하여 실제 설정 파일 변경을 확인
"""

import os
import shlex

import pytest

from vpn_mesh_agent.errors import PeerApplyError, PeerValidationError
from vpn_mesh_agent.keys import KeyGenerator
from vpn_mesh_agent.models import PeerConfig
from vpn_mesh_agent.wireguard import (
    ConfigManager,
    WireGuardTool,
    parse_peer_blocks,
    parse_wg_dump,
    render_peer_script,
    sanitize_label,
)

from conftest import LocalWireGuardTool


def new_key() -> str:
    return KeyGenerator().generate().public_key


def read_config(conn) -> str:
    with open(os.path.join(conn.workdir, "wg0.conf"), encoding="utf-8") as f:
        return f.read()


def test_add_peer_is_idempotent(local_conn):
    """같은 피어를 두 번 추가해도 블록은 하나"""
    manager = ConfigManager(LocalWireGuardTool())
    peer = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"], label="laptop")

    manager.add_peer(local_conn, peer)
    manager.add_peer(local_conn, peer)

    assert manager.peer_count(local_conn, peer.public_key) == 1
    blocks = parse_peer_blocks(read_config(local_conn))
    assert len(blocks) == 1
    assert blocks[0]["AllowedIPs"] == "10.8.0.100/32"
    assert blocks[0]["PersistentKeepalive"] == "25"
    assert blocks[0]["label"] == "laptop"


def test_add_peer_replaces_stale_address_owner(local_conn):
    """같은 IP 를 점유한 이전 키의 블록은 교체"""
    manager = ConfigManager(LocalWireGuardTool())
    old = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"])
    new = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"])

    manager.add_peer(local_conn, old)
    manager.add_peer(local_conn, new)

    blocks = parse_peer_blocks(read_config(local_conn))
    assert [b["PublicKey"] for b in blocks] == [new.public_key]


def test_add_peer_keeps_other_peers_and_interface(local_conn):
    """다른 피어와 [Interface] 는 유지"""
    manager = ConfigManager(LocalWireGuardTool())
    first = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"])
    second = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.101/32"])

    manager.add_peer(local_conn, first)
    manager.add_peer(local_conn, second)

    text = read_config(local_conn)
    assert text.startswith("[Interface]")
    assert "ListenPort = 51820" in text
    assert [b["PublicKey"] for b in parse_peer_blocks(text)] == [first.public_key, second.public_key]


def test_remove_peer(local_conn):
    """공개키로 피어 제거, 두 번 제거해도 안전"""
    manager = ConfigManager(LocalWireGuardTool())
    keep = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"])
    drop = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.101/32"])
    manager.add_peer(local_conn, keep)
    manager.add_peer(local_conn, drop)

    manager.remove_peer(local_conn, drop.public_key)
    manager.remove_peer(local_conn, drop.public_key)

    assert manager.peer_count(local_conn, drop.public_key) == 0
    assert manager.peer_count(local_conn, keep.public_key) == 1


def test_malformed_lines_are_stripped(local_conn):
    """리터럴 \\n 이 들어간 깨진 줄 제거"""
    path = os.path.join(local_conn.workdir, "wg0.conf")
    with open(path, "a", encoding="utf-8") as f:
        f.write("\n[Peer]\\nPublicKey = broken\n\n\n")

    manager = ConfigManager(LocalWireGuardTool())
    manager.add_peer(local_conn, PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"]))

    text = read_config(local_conn)
    assert "\\n" not in text
    assert "\n\n\n" not in text


def test_add_peer_returns_backup(local_conn):
    """원격 백업 파일 생성"""
    manager = ConfigManager(LocalWireGuardTool())
    original = read_config(local_conn)

    backup = manager.add_peer(local_conn, PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"]))

    assert backup.startswith("wg0.conf.backup-")
    with open(os.path.join(local_conn.workdir, backup), encoding="utf-8") as f:
        assert f.read() == original


class FailingValidationTool(LocalWireGuardTool):
    def validate_command(self):
        return "false"


def test_validation_failure_restores_backup(local_conn):
    """검증 실패 시 원래 설정으로 복원"""
    original = read_config(local_conn)
    manager = ConfigManager(FailingValidationTool())

    with pytest.raises(PeerApplyError) as excinfo:
        manager.add_peer(local_conn, PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"]))

    assert excinfo.value.host == "node"
    assert read_config(local_conn) == original


def test_invalid_peer_rejected_before_remote_call(local_conn):
    """잘못된 피어는 원격 명령 실행 전에 거부"""
    manager = ConfigManager(LocalWireGuardTool())
    with pytest.raises(PeerValidationError):
        manager.add_peer(local_conn, PeerConfig(public_key="short", allowed_ips=["10.8.0.100/32"]))
    with pytest.raises(PeerApplyError):
        manager.remove_peer(local_conn, "short")
    assert local_conn.commands == []


def test_label_is_quoted_in_script():
    """라벨의 셸 메타문자는 인용되어 실행되지 않음"""
    label = "evil'; rm -rf / #$(reboot)`id`"
    peer = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"], label=label)
    script = render_peer_script(WireGuardTool(), peer.public_key, peer.address, peer)

    assert f"LABEL={shlex.quote(label)}" in script
    for line in script.splitlines():
        if "rm -rf" in line:
            assert line.startswith("LABEL=")


def test_malicious_label_written_literally(local_conn):
    """메타문자가 포함된 라벨이 그대로 주석으로 기록됨"""
    marker = os.path.join(local_conn.workdir, "pwned")
    label = f"x$(touch {marker})`touch {marker}`; touch {marker}"
    manager = ConfigManager(LocalWireGuardTool())
    manager.add_peer(local_conn, PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"], label=label))

    assert not os.path.exists(marker)
    assert f"# {label}" in read_config(local_conn)


def test_sanitize_label():
    """제어 문자 제거"""
    assert sanitize_label("a\nb\tc ") == "a b c"
    assert sanitize_label("") == ""


def test_remove_script_has_no_append():
    """제거 스크립트에는 [Peer] 추가가 없음"""
    script = render_peer_script(WireGuardTool(), new_key())
    assert "tee -a" not in script
    assert "wg syncconf" in script
    assert "sudo cp -p" in script


def test_parse_wg_dump():
    """wg show dump 파싱"""
    key = new_key()
    output = (
        "privkey\tpubkey\t51820\toff\n"
        f"{key}\t(none)\t203.0.113.5:51820\t10.8.0.100/32\t1700000000\t100\t200\t25\n"
    )
    peers = parse_wg_dump(output)
    assert len(peers) == 1
    assert peers[0]["public_key"] == key
    assert peers[0]["endpoint"] == "203.0.113.5:51820"
    assert peers[0]["allowed_ips"] == "10.8.0.100/32"


def test_find_public_key_by_ip(local_conn):
    """덤프에서 IP 로 공개키 검색"""
    key = new_key()
    with open(os.path.join(local_conn.workdir, "wg-dump.txt"), "w", encoding="utf-8") as f:
        f.write("priv\tpub\t51820\toff\n")
        f.write(f"{key}\t(none)\t(none)\t10.8.0.100/32, 10.0.0.0/8\t0\t0\t0\t25\n")

    manager = ConfigManager(LocalWireGuardTool())
    assert manager.find_public_key_by_ip(local_conn, "10.8.0.100") == key
    assert manager.find_public_key_by_ip(local_conn, "10.8.0.101") is None


def test_get_public_key(local_conn):
    """노드 공개키 파일 읽기"""
    manager = ConfigManager(LocalWireGuardTool())
    assert len(manager.get_public_key(local_conn)) == 44


def test_peer_config_validation():
    """PeerConfig 검증 규칙"""
    key = new_key()
    PeerConfig(public_key=key, allowed_ips=["10.8.0.100/32"], endpoint="203.0.113.5:51820").validate()

    bad = [
        PeerConfig(public_key=key, allowed_ips=[]),
        PeerConfig(public_key=key, allowed_ips=["10.8.0.300/32"]),
        PeerConfig(public_key=key, allowed_ips=["10.8.0.100/32"], keepalive=70000),
        PeerConfig(public_key=key, allowed_ips=["10.8.0.100/32"], endpoint="no-port"),
        PeerConfig(public_key=key, allowed_ips=["10.8.0.100/32"], endpoint="host:0"),
        PeerConfig(public_key=key + "=", allowed_ips=["10.8.0.100/32"]),
    ]
    for peer in bad:
        with pytest.raises(PeerValidationError):
            peer.validate()


def test_add_peer_drops_replaced_key(local_conn):
    """replaces 로 지정한 이전 키의 블록은 주소가 달라도 제거"""
    manager = ConfigManager(LocalWireGuardTool())
    other = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.101/32"])
    old = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"], label="laptop")
    new = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.150/32"], label="laptop")

    manager.add_peer(local_conn, other)
    manager.add_peer(local_conn, old)
    manager.add_peer(local_conn, new, replaces=old.public_key)

    blocks = parse_peer_blocks(read_config(local_conn))
    assert [b["PublicKey"] for b in blocks] == [other.public_key, new.public_key]
    assert blocks[1]["AllowedIPs"] == "10.8.0.150/32"


def test_add_peer_rejects_invalid_replaced_key(local_conn):
    """잘못된 이전 키는 원격 실행 전에 거부"""
    manager = ConfigManager(LocalWireGuardTool())
    peer = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"])
    with pytest.raises(PeerApplyError):
        manager.add_peer(local_conn, peer, replaces="not-a-key")
    assert local_conn.commands == []


def test_add_peer_writes_preshared_key(local_conn):
    """PresharedKey 는 [Peer] 블록에 기록"""
    manager = ConfigManager(LocalWireGuardTool())
    psk = new_key()
    peer = PeerConfig(public_key=new_key(), allowed_ips=["10.8.0.100/32"], preshared_key=psk)

    manager.add_peer(local_conn, peer)

    blocks = parse_peer_blocks(read_config(local_conn))
    assert blocks[0]["PresharedKey"] == psk
    assert "PresharedKey" not in render_peer_script(WireGuardTool(), peer.public_key)


def test_listen_and_ping_checks(local_conn):
    """수신 포트 및 메시 IP ping 확인"""
    manager = ConfigManager(LocalWireGuardTool())
    assert manager.is_listening(local_conn, 51820) == False
    assert manager.ping(local_conn, "10.8.0.11") == False

    with open(os.path.join(local_conn.workdir, "ss-udp.txt"), "w", encoding="utf-8") as f:
        f.write("UNCONN 0 0 0.0.0.0:51820 0.0.0.0:*\n")
    with open(os.path.join(local_conn.workdir, "reachable.txt"), "w", encoding="utf-8") as f:
        f.write("10.8.0.11\n")

    assert manager.is_listening(local_conn, 51820) == True
    assert manager.is_listening(local_conn, 51821) == False
    assert manager.ping(local_conn, "10.8.0.11") == True
    assert manager.ping(local_conn, "10.8.0.12") == False


def test_health_commands():
    """기본 도구의 수신 포트/ping 명령 형태"""
    tool = WireGuardTool()
    assert "ss -uln | grep -q ':51820 '" in tool.listen_check_command(51820)
    assert tool.ping_command("10.8.0.11").startswith("ping -c 1 -W 5 10.8.0.11 ")
