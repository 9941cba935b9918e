"""
재시도 정책
일시적인 전송 오류에 대한 지수 백오프 정책 (상태 없는 순수 객체)
"""

import socket
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

import paramiko

from .errors import MeshError, RemoteCommandError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """재시도 정책

    attempt는 1부터 시작한다. 모든 판단은 (attempt, error)의 순수 함수다.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def quick(cls) -> "RetryPolicy":
        """빠른 작업용 정책"""
        return cls(max_attempts=3, initial_delay=0.5, max_delay=5.0)

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        """불안정한 네트워크용 정책"""
        return cls(max_attempts=10, initial_delay=2.0, max_delay=60.0)

    def with_max_attempts(self, attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=attempts)

    def backoff(self, attempt: int) -> float:
        """attempt번째 실패 후 대기 시간 (초)"""
        if attempt < 1:
            attempt = 1
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        """전송 계층 오류만 재시도 대상"""
        # 인증 실패와 호스트 키 불일치는 재시도해도 바뀌지 않음
        if isinstance(error, (paramiko.AuthenticationException, paramiko.BadHostKeyException)):
            return False
        if isinstance(error, (RemoteCommandError, MeshError)):
            return False
        if isinstance(error, paramiko.SSHException):
            return True
        # socket.timeout, ConnectionRefusedError, ConnectionResetError 모두 OSError 하위
        return isinstance(error, (socket.timeout, TimeoutError, OSError, EOFError))

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        return attempt < self.max_attempts and self.is_retryable(error)

    def next_delay(self, attempt: int, error: BaseException) -> Optional[float]:
        """재시도할 경우 대기 시간, 중단해야 하면 None"""
        if not self.should_retry(attempt, error):
            return None
        return self.backoff(attempt)

    def call(self, fn: Callable[[], T],
             deadline: Optional[float] = None,
             sleep: Callable[[float], None] = time.sleep,
             on_retry: Optional[Callable[[int, BaseException, float], None]] = None) -> T:
        """정책에 따라 fn 실행

        deadline은 time.monotonic() 기준 절대 시각이며, 이를 넘겨 대기하지 않는다.
        재시도가 끝나면 마지막 오류를 그대로 다시 발생시킨다.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                delay = self.next_delay(attempt, e)
                if delay is None:
                    raise
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                sleep(delay)
                attempt += 1
