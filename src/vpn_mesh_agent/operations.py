"""
작업 이력 기록 모듈
join/leave 결과(성공/실패 수, 호스트별 오류, 소요 시간)를 JSON Lines 로 기록
"""

import json
import os
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .logger import get_logger
from .models import FleetResult


@dataclass
class OperationRecord:
    """작업 이력 레코드"""
    cluster: str
    operation: str
    status: str
    duration: float = 0.0
    node_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_fleet(cls, cluster: str, result: FleetResult,
                   details: Optional[Dict[str, Any]] = None) -> "OperationRecord":
        if result.fail_count == 0:
            status = "success"
        elif result.ok:
            status = "partial"
        else:
            status = "failed"
        return cls(
            cluster=cluster,
            operation=result.operation,
            status=status,
            duration=round(result.duration, 3),
            node_count=result.total,
            success_count=result.success_count,
            fail_count=result.fail_count,
            errors=[{"host": f.host, "error": f.error} for f in result.failures],
            details=details or {},
        )


class OperationRecorder:
    """작업 이력 기록 클래스"""

    def __init__(self, log_dir: str = "~/.vpn-mesh-agent/logs", filename: str = "operations.jsonl"):
        self.path = os.path.join(os.path.expanduser(log_dir), filename)
        self._lock = threading.Lock()
        self.logger = get_logger()

    def record(self, record: OperationRecord) -> OperationRecord:
        with self._lock:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(asdict(record), ensure_ascii=False) + "\n")
        self.logger.debug(f"Recorded {record.operation} ({record.status}) for {record.cluster}")
        return record

    def history(self, cluster: Optional[str] = None, limit: int = 20) -> List[OperationRecord]:
        """최근 기록 (최신순)"""
        if not os.path.exists(self.path):
            return []
        records = []
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    self.logger.warning(f"Skipping malformed operation record in {self.path}")
                    continue
                if cluster and data.get("cluster") != cluster:
                    continue
                records.append(OperationRecord(**data))
        return list(reversed(records))[:limit]
