"""
Headscale 관리 모듈
코디네이터 관리 API(/api/v1)를 통한 인증 키 발급 및 노드/사용자 관리

API 응답은 모두 기본값을 명시한 dataclass 로 변환한다.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from .errors import AuthKeyError, HeadscaleError
from .logger import get_logger

DEFAULT_EXPIRATION = timedelta(hours=24)


@dataclass
class HeadscaleConfig:
    """Headscale API 접속 정보"""
    api_url: str
    api_key: str
    namespace: str = "default"
    timeout: float = 30.0


@dataclass
class AuthKeyOptions:
    """인증 키 발급 옵션"""
    reusable: bool = False
    ephemeral: bool = True
    expiration: timedelta = DEFAULT_EXPIRATION
    tags: List[str] = field(default_factory=list)


@dataclass
class HeadscaleUser:
    id: str = ""
    name: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeadscaleUser":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", "") or "",
            created_at=data.get("createdAt", "") or "",
        )


@dataclass
class PreAuthKey:
    id: str = ""
    key: str = ""
    user: str = ""
    reusable: bool = False
    ephemeral: bool = False
    used: bool = False
    expiration: str = ""
    created_at: str = ""
    acl_tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreAuthKey":
        user = data.get("user")
        if isinstance(user, dict):
            user = user.get("name", "")
        return cls(
            id=str(data.get("id", "")),
            key=data.get("key", "") or "",
            user=user or "",
            reusable=bool(data.get("reusable", False)),
            ephemeral=bool(data.get("ephemeral", False)),
            used=bool(data.get("used", False)),
            expiration=data.get("expiration", "") or "",
            created_at=data.get("createdAt", "") or "",
            acl_tags=list(data.get("aclTags") or []),
        )


@dataclass
class HeadscaleNode:
    id: str = ""
    name: str = ""
    given_name: str = ""
    user: str = ""
    ip_addresses: List[str] = field(default_factory=list)
    online: bool = False
    last_seen: str = ""
    expiry: str = ""
    register_method: str = ""
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeadscaleNode":
        user = data.get("user")
        if isinstance(user, dict):
            user = user.get("name", "")
        tags = list(data.get("forcedTags") or []) + list(data.get("validTags") or [])
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", "") or "",
            given_name=data.get("givenName", "") or "",
            user=user or data.get("namespace", "") or "",
            ip_addresses=list(data.get("ipAddresses") or []),
            online=bool(data.get("online", False)),
            last_seen=data.get("lastSeen", "") or "",
            expiry=data.get("expiry", "") or "",
            register_method=data.get("registerMethod", "") or "",
            tags=tags,
        )


class HeadscaleManager:
    """Headscale 관리 API 클라이언트"""

    def __init__(self, config: HeadscaleConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.base_url = config.api_url.rstrip("/")
        self.session = session or requests.Session()
        self.logger = get_logger()

    def _request(self, method: str, path: str, body: Optional[Dict] = None,
                 params: Optional[Dict] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": "application/json",
        }
        self.logger.debug(f"Headscale {method} {path}")
        try:
            response = self.session.request(
                method, url, json=body, params=params, headers=headers, timeout=self.config.timeout
            )
        except requests.exceptions.RequestException as e:
            raise HeadscaleError(f"headscale {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            detail = (response.text or "").strip()[:200]
            raise HeadscaleError(
                f"headscale {method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise HeadscaleError(f"headscale {method} {path} returned invalid JSON: {e}") from e
        return data if isinstance(data, dict) else {}

    def create_auth_key(self, options: Optional[AuthKeyOptions] = None) -> str:
        """사전 인증 키 발급

        Headscale 0.26 이상은 사용자 이름 대신 숫자 ID 를 요구하므로 먼저 조회한다.
        """
        options = options or AuthKeyOptions()
        expiration = options.expiration or DEFAULT_EXPIRATION
        expires_at = datetime.now(timezone.utc) + expiration

        try:
            user_id = self._user_id(self.config.namespace)
            data = self._request("POST", "/api/v1/preauthkey", body={
                "user": user_id,
                "reusable": options.reusable,
                "ephemeral": options.ephemeral,
                "expiration": expires_at.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
                "aclTags": list(options.tags),
            })
        except HeadscaleError as e:
            self.logger.error(f"Failed to create auth key: {e}")
            raise AuthKeyError(f"failed to create auth key: {e}", status_code=e.status_code) from e

        key = PreAuthKey.from_dict(data.get("preAuthKey") or {}).key
        if not key:
            raise AuthKeyError("headscale response did not contain a pre-auth key")

        self.logger.info(
            f"Created {'ephemeral ' if options.ephemeral else ''}auth key for "
            f"'{self.config.namespace}' (expires {expires_at:%Y-%m-%d %H:%M} UTC)"
        )
        return key

    def _user_id(self, name: str) -> str:
        for user in self.list_users():
            if user.name == name:
                return user.id
        raise HeadscaleError(f"user/namespace '{name}' not found")

    def list_users(self) -> List[HeadscaleUser]:
        data = self._request("GET", "/api/v1/user")
        return [HeadscaleUser.from_dict(item) for item in data.get("users") or []]

    def create_user(self, name: str) -> HeadscaleUser:
        data = self._request("POST", "/api/v1/user", body={"name": name})
        return HeadscaleUser.from_dict(data.get("user") or {})

    def list_auth_keys(self) -> List[PreAuthKey]:
        data = self._request("GET", "/api/v1/preauthkey", params={"user": self.config.namespace})
        return [PreAuthKey.from_dict(item) for item in data.get("preAuthKeys") or []]

    def expire_auth_key(self, key: str):
        self._request("POST", "/api/v1/preauthkey/expire",
                      body={"user": self.config.namespace, "key": key})
        self.logger.info("Expired pre-auth key")

    def list_nodes(self) -> List[HeadscaleNode]:
        data = self._request("GET", "/api/v1/node", params={"user": self.config.namespace})
        return [HeadscaleNode.from_dict(item) for item in data.get("nodes") or []]

    def delete_node(self, node_id: str):
        self._request("DELETE", f"/api/v1/node/{node_id}")
        self.logger.info(f"Deleted headscale node {node_id}")

    def expire_node(self, node_id: str):
        self._request("POST", f"/api/v1/node/{node_id}/expire")
        self.logger.info(f"Expired headscale node {node_id}")

    def is_healthy(self) -> bool:
        """/health 응답 코드 확인"""
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Headscale health check failed: {e}")
            return False
        return response.status_code == 200
