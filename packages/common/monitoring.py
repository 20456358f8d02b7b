from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional


logger = logging.getLogger(__name__)

ERROR_RATE_THRESHOLD = 0.05
SLOW_OPERATION_MS = 5000
# error-rate alerts need a few samples before they mean anything
MIN_SAMPLES_FOR_ALERT = 10


@dataclass(frozen=True)
class OperationMetric:
    operation: str
    success: bool
    duration_ms: int
    backend: str
    size: Optional[int] = None
    teacher_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class StorageMonitor:
    """Keeps a sliding window of storage operations and logs alerts.

    Every recorded operation is logged as ``storage_operation``. A slow
    operation, a failed operation, or a window error rate above the threshold
    is logged as ``storage_alert`` with a severity.
    """

    def __init__(
        self,
        enabled: bool = True,
        window: int = 100,
        error_rate_threshold: float = ERROR_RATE_THRESHOLD,
        slow_operation_ms: int = SLOW_OPERATION_MS,
    ) -> None:
        self.enabled = enabled
        self.error_rate_threshold = error_rate_threshold
        self.slow_operation_ms = slow_operation_ms
        self._recent: Deque[OperationMetric] = deque(maxlen=window)

    def record(
        self,
        operation: str,
        *,
        success: bool,
        duration_ms: int,
        backend: str,
        size: Optional[int] = None,
        teacher_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        metric = OperationMetric(
            operation=operation,
            success=success,
            duration_ms=duration_ms,
            backend=backend,
            size=size,
            teacher_id=teacher_id,
            error=error,
        )
        self._recent.append(metric)
        logger.info(
            "storage_operation",
            extra={
                "operation": operation,
                "success": success,
                "duration_ms": duration_ms,
                "backend": backend,
                "size": size,
                "teacher_id": teacher_id,
                "error": error,
            },
        )
        self._check_alerts(metric)

    def _check_alerts(self, metric: OperationMetric) -> None:
        if metric.duration_ms > self.slow_operation_ms:
            self._alert("response_time", "warning", metric, threshold_ms=self.slow_operation_ms)
        if not metric.success:
            denied = "denied" in (metric.error or "").lower()
            self._alert("operation_failed", "critical" if denied else "warning", metric)
        rate = self.error_rate()
        if len(self._recent) >= MIN_SAMPLES_FOR_ALERT and rate > self.error_rate_threshold:
            self._alert("error_rate", "critical", metric, error_rate=round(rate, 4))

    def _alert(self, kind: str, severity: str, metric: OperationMetric, **fields: Any) -> None:
        level = logging.CRITICAL if severity == "critical" else logging.WARNING
        logger.log(
            level,
            "storage_alert",
            extra={
                "alert": kind,
                "severity": severity,
                "operation": metric.operation,
                "backend": metric.backend,
                "teacher_id": metric.teacher_id,
                **fields,
            },
        )

    def error_rate(self) -> float:
        if not self._recent:
            return 0.0
        return sum(1 for m in self._recent if not m.success) / len(self._recent)

    def summary(self) -> Dict[str, Any]:
        metrics = list(self._recent)
        by_operation: Dict[str, Dict[str, int]] = {}
        for m in metrics:
            entry = by_operation.setdefault(m.operation, {"count": 0, "errors": 0})
            entry["count"] += 1
            entry["errors"] += 0 if m.success else 1
        rate = self.error_rate()
        avg = sum(m.duration_ms for m in metrics) / len(metrics) if metrics else 0.0
        return {
            "enabled": self.enabled,
            "totalOperations": len(metrics),
            "errorRate": round(rate, 4),
            "avgResponseTimeMs": round(avg, 1),
            "byOperation": by_operation,
            "status": "degraded" if rate > self.error_rate_threshold or avg > self.slow_operation_ms else "healthy",
        }
