"""
Operation result types

Correlated operations never raise across the public boundary; every outcome,
including timeouts and failed preconditions, is one of these values.
"""

import time
from dataclasses import dataclass, field
from typing import Any

from roundsync.models.enums import ResultStatus


@dataclass(frozen=True)
class OperationResult:
    """Outcome of place_wager / cash_out / query_balance / resync"""

    status: ResultStatus
    operation: str
    data: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    request_id: str | None = None

    # Timestamps for latency tracking (ms since epoch)
    sent_ts: int | None = None
    settled_ts: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    @property
    def latency_ms(self) -> int | None:
        """Time from emit to settlement."""
        if self.sent_ts is None:
            return None
        return self.settled_ts - self.sent_ts

    @classmethod
    def from_response(
        cls, operation: str, data: Any, request_id: str | None = None, sent_ts: int | None = None
    ) -> "OperationResult":
        """Build a result from a server response payload ({success, reason, ...})."""
        payload = data if isinstance(data, dict) else {"value": data}
        success = bool(payload.get("success", True))
        return cls(
            status=ResultStatus.SUCCESS if success else ResultStatus.REJECTED,
            operation=operation,
            data=payload,
            reason=None if success else payload.get("reason"),
            request_id=request_id,
            sent_ts=sent_ts,
        )

    @classmethod
    def failure(
        cls,
        status: ResultStatus,
        operation: str,
        reason: str,
        request_id: str | None = None,
        sent_ts: int | None = None,
    ) -> "OperationResult":
        return cls(
            status=status,
            operation=operation,
            reason=reason,
            request_id=request_id,
            sent_ts=sent_ts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "operation": self.operation,
            "ok": self.ok,
            "data": self.data,
            "reason": self.reason,
            "request_id": self.request_id,
            "latency_ms": self.latency_ms,
        }
