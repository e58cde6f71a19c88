"""
In-process submission metrics.

The engine never records metrics itself; a caller owns a
``SubmissionMetrics`` instance, passes ``record_attempt`` as the engine's
``on_attempt`` callback and reports final outcomes with ``record_success`` /
``record_failure``.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .exceptions import TransactionError
from .retry import AttemptEvent, AttemptOutcome


@dataclass
class SubmissionMetrics:
    """Counters and gauges for a run of submissions."""

    total: int = 0
    success: int = 0
    failed: int = 0
    attempts: int = 0
    retried_attempts: int = 0
    blockhash_failures: int = 0
    failures_by_kind: Dict[str, int] = field(default_factory=dict)
    last_latency_ms: Optional[float] = None
    wallet_balance_sol: Optional[float] = None
    last_success_time: Optional[float] = None
    last_failure_time: Optional[float] = None

    def record_attempt(self, event: AttemptEvent):
        """Engine ``on_attempt`` callback."""
        self.attempts += 1
        self.blockhash_failures += event.blockhash_failures
        if event.outcome is AttemptOutcome.RETRIABLE:
            self.retried_attempts += 1

    def record_success(self, latency_seconds: float):
        self.total += 1
        self.success += 1
        self.last_latency_ms = latency_seconds * 1000
        self.last_success_time = time.time()

    def record_failure(self, error: TransactionError):
        self.total += 1
        self.failed += 1
        kind = error.kind.value
        self.failures_by_kind[kind] = self.failures_by_kind.get(kind, 0) + 1
        self.last_failure_time = time.time()

    def set_balance(self, sol: float):
        self.wallet_balance_sol = sol

    @property
    def success_rate(self) -> float:
        """Calculate success rate as percentage."""
        if self.total == 0:
            return 0.0
        return (self.success / self.total) * 100

    def snapshot(self) -> Dict[str, Any]:
        return {
            "transactions_total": self.total,
            "transactions_success": self.success,
            "transactions_failed": self.failed,
            "attempts": self.attempts,
            "retried_attempts": self.retried_attempts,
            "blockhash_failures": self.blockhash_failures,
            "failures_by_kind": dict(self.failures_by_kind),
            "transaction_latency_ms": self.last_latency_ms,
            "wallet_balance_sol": self.wallet_balance_sol,
            "success_rate": round(self.success_rate, 2),
        }

    def reset(self):
        """Reset all metrics."""
        self.total = 0
        self.success = 0
        self.failed = 0
        self.attempts = 0
        self.retried_attempts = 0
        self.blockhash_failures = 0
        self.failures_by_kind.clear()
        self.last_latency_ms = None
        self.wallet_balance_sol = None
        self.last_success_time = None
        self.last_failure_time = None


__all__ = ["SubmissionMetrics"]
