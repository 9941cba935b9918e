"""
원격 실행 연결 모듈
paramiko 기반 SSH 연결, bastion 경유(2-hop) 지원, 재시도
"""

import socket
import time
from dataclasses import dataclass
from typing import Dict, Optional

import paramiko

from .errors import RemoteCommandError, SSHConnectionError
from .logger import get_logger
from .retry import RetryPolicy

# 클라우드 이미지별 기본 SSH 사용자
DEFAULT_PROVIDER_USERS = {
    "azure": "azureuser",
    "aws": "ubuntu",
    "gcp": "ubuntu",
}


def ssh_user_for_provider(provider: str, overrides: Optional[Dict[str, str]] = None,
                          default: str = "root") -> str:
    """프로바이더에 맞는 SSH 사용자 반환"""
    users = dict(DEFAULT_PROVIDER_USERS)
    if overrides:
        users.update(overrides)
    return users.get((provider or "").lower(), default)


@dataclass
class ConnectionConfig:
    """SSH 연결 설정"""
    host: str
    user: str = "root"
    port: int = 22
    timeout: float = 30.0
    key_path: Optional[str] = None
    command_timeout: Optional[float] = 300.0
    bastion_host: Optional[str] = None
    bastion_user: str = "root"
    bastion_port: int = 22

    @property
    def via_bastion(self) -> bool:
        return bool(self.bastion_host)

    def describe(self) -> str:
        target = f"{self.user}@{self.host}:{self.port}"
        if self.via_bastion:
            return f"{target} via {self.bastion_user}@{self.bastion_host}:{self.bastion_port}"
        return target


class Connection:
    """원격 명령 실행 채널 (호출자가 소유하고 반드시 close 해야 함)"""

    host: str = ""

    def execute(self, command: str, timeout: Optional[float] = None,
                input_data: Optional[str] = None) -> str:
        raise NotImplementedError

    def execute_script(self, script: str, timeout: Optional[float] = None) -> str:
        """여러 줄 스크립트를 stdin 으로 bash 에 전달하여 실행"""
        return self.execute("bash -s", timeout=timeout, input_data=script)

    def is_alive(self) -> bool:
        return False

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SSHConnection(Connection):
    """paramiko SSH 연결 (직접 또는 bastion 경유)"""

    def __init__(self, config: ConnectionConfig, client: paramiko.SSHClient,
                 bastion: Optional[paramiko.SSHClient] = None):
        self.config = config
        self.host = config.host
        self.client: Optional[paramiko.SSHClient] = client
        self.bastion: Optional[paramiko.SSHClient] = bastion
        self.logger = get_logger()

    def execute(self, command: str, timeout: Optional[float] = None,
                input_data: Optional[str] = None) -> str:
        """단일 명령 실행

        stdout 과 stderr 를 합친 출력을 반환한다. 종료 코드가 0이 아니면
        RemoteCommandError 를 발생시킨다. 내부 재시도는 하지 않는다.
        """
        if self.client is None:
            raise RemoteCommandError(self.host, command, -1, "connection is closed")

        timeout = timeout if timeout is not None else self.config.command_timeout
        self.logger.debug(f"[{self.host}] $ {command}")

        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            if input_data is not None:
                stdin.write(input_data)
                stdin.flush()
            stdin.channel.shutdown_write()

            out = stdout.read().decode("utf-8", "replace")
            err = stderr.read().decode("utf-8", "replace")
            status = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise RemoteCommandError(self.host, command, -1, f"command timed out after {timeout}s")
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise RemoteCommandError(self.host, command, -1, f"channel error: {e}") from e

        output = out + err if err else out
        if status != 0:
            raise RemoteCommandError(self.host, command, status, output)
        return output

    def is_alive(self) -> bool:
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def close(self):
        """대상 -> bastion 순서로 해제 (여러 번 호출해도 안전)"""
        client, self.client = self.client, None
        bastion, self.bastion = self.bastion, None
        if client is not None:
            client.close()
        if bastion is not None:
            bastion.close()


class ConnectionManager:
    """SSH 연결 관리 클래스"""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None,
                 key_path: Optional[str] = None, sleep=time.sleep):
        self.retry_policy = retry_policy or RetryPolicy.default()
        self.key_path = key_path
        self.sleep = sleep
        self.logger = get_logger()

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def _connect_client(self, client: paramiko.SSHClient, host: str, port: int, user: str,
                        config: ConnectionConfig, sock=None):
        key_path = config.key_path or self.key_path
        client.connect(
            hostname=host,
            port=port,
            username=user,
            key_filename=key_path,
            timeout=config.timeout,
            banner_timeout=config.timeout,
            auth_timeout=config.timeout,
            look_for_keys=key_path is None,
            allow_agent=True,
            sock=sock,
        )

    def _open(self, config: ConnectionConfig) -> SSHConnection:
        """전체 핸드셰이크 1회 시도"""
        bastion = None
        client = None
        try:
            sock = None
            if config.via_bastion:
                bastion = self._new_client()
                self._connect_client(bastion, config.bastion_host, config.bastion_port,
                                     config.bastion_user, config)
                transport = bastion.get_transport()
                if transport is None:
                    raise paramiko.SSHException(f"bastion {config.bastion_host} transport unavailable")
                sock = transport.open_channel(
                    "direct-tcpip",
                    (config.host, config.port),
                    ("127.0.0.1", 0),
                    timeout=config.timeout,
                )

            client = self._new_client()
            self._connect_client(client, config.host, config.port, config.user, config, sock=sock)
            return SSHConnection(config, client, bastion)
        except BaseException:
            # 실패한 시도의 부분 연결 정리
            if client is not None:
                client.close()
            if bastion is not None:
                bastion.close()
            raise

    def connect(self, config: ConnectionConfig, deadline: Optional[float] = None) -> SSHConnection:
        """재시도 정책에 따라 연결

        재시도가 끝나면 호스트와 마지막 원인을 담은 SSHConnectionError 를 발생시킨다.
        """
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            return self._open(config)

        def on_retry(attempt_no, error, delay):
            self.logger.warning(
                f"Connection attempt {attempt_no}/{self.retry_policy.max_attempts} "
                f"to {config.describe()} failed: {error}; retrying in {delay:.1f}s"
            )

        self.logger.debug(f"Connecting to {config.describe()}")
        try:
            conn = self.retry_policy.call(attempt, deadline=deadline, sleep=self.sleep, on_retry=on_retry)
        except Exception as e:
            self.logger.error(f"Failed to connect to {config.describe()} after {attempts} attempt(s): {e}")
            raise SSHConnectionError(config.host, e, attempts) from e

        self.logger.debug(f"Connected to {config.describe()}")
        return conn

    def connect_and_execute(self, config: ConnectionConfig, command: str) -> str:
        """연결 후 명령 1회 실행, 항상 연결 해제"""
        conn = self.connect(config)
        try:
            return conn.execute(command)
        finally:
            conn.close()
