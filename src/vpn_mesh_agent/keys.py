"""
WireGuard 키 생성 모듈
X25519 개인키/공개키 쌍 생성 및 공개키 유도
"""

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Callable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .errors import KeyGenerationError
from .logger import get_logger

KEY_SIZE = 32


@dataclass(frozen=True)
class KeyPair:
    """base64 인코딩된 WireGuard 키 쌍"""
    private_key: str
    public_key: str


def clamp(raw: bytes) -> bytes:
    """X25519 스칼라 클램핑"""
    if len(raw) != KEY_SIZE:
        raise KeyGenerationError(f"private key must be {KEY_SIZE} bytes, got {len(raw)}")
    scalar = bytearray(raw)
    scalar[0] &= 248
    scalar[31] &= 127
    scalar[31] |= 64
    return bytes(scalar)


class KeyGenerator:
    """WireGuard 호환 키 생성기"""

    def __init__(self, random_source: Callable[[int], bytes] = secrets.token_bytes):
        self.random_source = random_source
        self.logger = get_logger()

    def generate(self) -> KeyPair:
        """새 키 쌍 생성"""
        try:
            raw = self.random_source(KEY_SIZE)
        except Exception as e:
            raise KeyGenerationError(f"failed to read random bytes: {e}") from e

        if not isinstance(raw, (bytes, bytearray)) or len(raw) != KEY_SIZE:
            raise KeyGenerationError("random source returned an invalid number of bytes")

        private = clamp(bytes(raw))
        public = self._public_from_raw(private)
        self.logger.debug("Generated new WireGuard key pair")
        return KeyPair(
            private_key=base64.b64encode(private).decode("ascii"),
            public_key=base64.b64encode(public).decode("ascii"),
        )

    def derive_public_key(self, private_key: str) -> str:
        """base64 개인키에서 base64 공개키 유도"""
        try:
            raw = base64.b64decode(private_key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeyGenerationError(f"invalid private key encoding: {e}") from e
        if len(raw) != KEY_SIZE:
            raise KeyGenerationError(f"private key must decode to {KEY_SIZE} bytes")
        return base64.b64encode(self._public_from_raw(raw)).decode("ascii")

    @staticmethod
    def _public_from_raw(raw: bytes) -> bytes:
        # X25519는 내부적으로 클램핑하므로 클램핑 전후 결과가 같다
        key = X25519PrivateKey.from_private_bytes(raw)
        return key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
