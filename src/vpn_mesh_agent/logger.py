"""
로깅 시스템
파일 및 콘솔 로깅, 디버그 모드, 백그라운드 데몬용 파일 전용 모드 지원
"""

import logging
import os
from datetime import datetime
from typing import Optional
from rich.logging import RichHandler
from rich.console import Console

console = Console()

DEFAULT_LOG_DIR = "~/.vpn-mesh-agent/logs"
LOGGER_NAME = "vpn_mesh_agent"


class AgentLogger:
    """에이전트 로거"""

    def __init__(self, log_dir: str = DEFAULT_LOG_DIR, log_level: str = "INFO",
                 debug: bool = False, console_output: bool = True, prefix: str = "mesh"):
        self.log_dir = os.path.expanduser(log_dir)
        self.log_level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.INFO)
        self.debug_mode = debug

        os.makedirs(self.log_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = os.path.join(self.log_dir, f"{prefix}_{timestamp}.log")
        self.error_file = os.path.join(self.log_dir, f"{prefix}_error_{timestamp}.log")

        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False

        # 기존 핸들러 정리 (재초기화 시 파일 핸들 누수 방지)
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers.clear()

        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(file_formatter)
        self.logger.addHandler(file_handler)

        error_handler = logging.FileHandler(self.error_file, encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        self.logger.addHandler(error_handler)

        # 데몬 자식 프로세스에는 터미널이 없으므로 콘솔 핸들러 생략
        if console_output:
            rich_handler = RichHandler(
                console=console,
                rich_tracebacks=True,
                show_time=False,
                show_path=debug
            )
            rich_handler.setLevel(self.log_level)
            self.logger.addHandler(rich_handler)

    def debug(self, message: str):
        self.logger.debug(message)

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)

    def critical(self, message: str):
        self.logger.critical(message)

    def exception(self, message: str):
        """예외 로그 (트레이스백 포함)"""
        self.logger.exception(message)

    def get_log_files(self) -> dict:
        """로그 파일 경로 반환"""
        return {
            "main_log": self.log_file,
            "error_log": self.error_file,
            "log_dir": self.log_dir
        }


# 글로벌 로거 인스턴스
_logger: Optional[AgentLogger] = None


def get_logger(log_dir: str = DEFAULT_LOG_DIR,
               log_level: str = "INFO",
               debug: bool = False) -> AgentLogger:
    """로거 인스턴스 가져오기 (없으면 기본값으로 생성)"""
    global _logger
    if _logger is None:
        _logger = AgentLogger(log_dir, log_level, debug)
    return _logger


def init_logger(log_dir: str, log_level: str, debug: bool,
                console_output: bool = True, prefix: str = "mesh") -> AgentLogger:
    """로거 초기화"""
    global _logger
    _logger = AgentLogger(log_dir, log_level, debug, console_output, prefix)
    return _logger
