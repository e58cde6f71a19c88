"""
Retry Module - retry policy for transaction submission.

Provides the retry configuration consumed by the submission engine, the
backoff strategies that turn an attempt number into a delay, the default
retriability predicate, and the per-attempt event the engine emits so a
caller can feed its own metrics sink.
"""

import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Type

from .exceptions import ErrorKind, TransactionError

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 30.0
DEFAULT_BLOCKHASH_RETRY_INTERVAL = 1.0
DEFAULT_MAX_BLOCKHASH_RETRIES = 10

# Case-sensitive substrings marking a transient send/confirm failure.
RETRIABLE_SEND_MARKERS: Tuple[str, ...] = (
    "blockhash not found",
    "timeout",
    "socket closed",
    "retry rate limit",
    "too many requests",
)
RETRIABLE_CONFIRMATION_MARKERS: Tuple[str, ...] = (
    "timeout",
    "connection closed",
)

RetriablePredicate = Callable[[ErrorKind, str], bool]


@dataclass
class RetryConfig:
    """
    Configuration for submission retry behavior.

    Attributes:
        max_retries: Retries after the first attempt (0 = single attempt)
        base_delay: Delay before the first retry in seconds
        max_delay: Ceiling on any single backoff delay (None = uncapped)
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delays
        jitter_factor: Maximum jitter as fraction of delay (0.0-1.0)
        blockhash_retry_interval: Wait between failed blockhash fetches
        max_blockhash_retries: Re-fetches allowed after a failed blockhash
            fetch before the attempt fails with RpcError (None = unbounded)
    """
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: Optional[float] = DEFAULT_MAX_DELAY
    exponential_base: float = 2.0
    jitter: bool = False
    jitter_factor: float = 0.0
    blockhash_retry_interval: float = DEFAULT_BLOCKHASH_RETRY_INTERVAL
    max_blockhash_retries: Optional[int] = DEFAULT_MAX_BLOCKHASH_RETRIES

    def __post_init__(self):
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay is not None and self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.blockhash_retry_interval < 0:
            raise ValueError("blockhash_retry_interval must be >= 0")
        if self.max_blockhash_retries is not None and self.max_blockhash_retries < 0:
            raise ValueError("max_blockhash_retries must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class BackoffStrategy(ABC):
    """Abstract base class for backoff strategies."""

    @abstractmethod
    def get_delay(self, retry: int, config: RetryConfig) -> float:
        """Calculate delay before the ``retry``-th retry (1-based)."""
        pass

    def _apply_jitter(self, delay: float, config: RetryConfig) -> float:
        """Clamp to max_delay, apply jitter if configured, then clamp again."""
        if config.max_delay is not None:
            delay = min(delay, config.max_delay)
        if config.jitter and config.jitter_factor > 0 and math.isfinite(delay):
            jitter_range = delay * config.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
            if config.max_delay is not None:
                delay = min(delay, config.max_delay)
        return max(0.0, delay)


class ExponentialBackoff(BackoffStrategy):
    """Exponential backoff: delay = base_delay * (exponential_base ^ (retry - 1))"""

    def get_delay(self, retry: int, config: RetryConfig) -> float:
        try:
            delay = config.base_delay * (config.exponential_base ** (retry - 1))
        except OverflowError:
            delay = math.inf if config.base_delay > 0 else 0.0
        return self._apply_jitter(delay, config)


class ConstantBackoff(BackoffStrategy):
    """Constant backoff: delay = base_delay (always)"""

    def get_delay(self, retry: int, config: RetryConfig) -> float:
        return self._apply_jitter(config.base_delay, config)


BACKOFF_STRATEGIES: Dict[str, Type[BackoffStrategy]] = {
    "exponential": ExponentialBackoff,
    "constant": ConstantBackoff,
}


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    strategy: Optional[BackoffStrategy] = None,
) -> float:
    """Delay to wait before ``attempt`` (1-based); the first attempt never waits."""
    if attempt <= 1:
        return 0.0
    if strategy is None:
        strategy = ExponentialBackoff()
    return strategy.get_delay(attempt - 1, config)


def default_is_retriable(kind: ErrorKind, detail: str) -> bool:
    """Substring-based retry policy over the error kind and its detail."""
    if kind is ErrorKind.RPC_ERROR:
        return True
    if kind is ErrorKind.SEND_ERROR:
        return any(marker in detail for marker in RETRIABLE_SEND_MARKERS)
    if kind is ErrorKind.CONFIRMATION_ERROR:
        return any(marker in detail for marker in RETRIABLE_CONFIRMATION_MARKERS)
    return False


def is_retriable_error(
    error: TransactionError,
    predicate: RetriablePredicate = default_is_retriable,
) -> bool:
    """Apply ``predicate`` to a classified error; retry exhaustion is always terminal."""
    if error.kind is ErrorKind.MAX_RETRIES_EXCEEDED:
        return False
    return predicate(error.kind, error.detail)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRIABLE = "retriable"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptEvent:
    """
    One submission attempt, reported to the caller once it is classified.

    Attributes:
        attempt: 1-based attempt index
        elapsed: Seconds since the submission started
        backoff: Seconds slept before this attempt
        outcome: Success, retriable failure or fatal failure
        error: The classified error for failed attempts
        signature: Transaction signature for the successful attempt
        blockhash_failures: Blockhash fetch failures absorbed by this attempt
    """
    attempt: int
    elapsed: float
    backoff: float
    outcome: AttemptOutcome
    error: Optional[TransactionError] = None
    signature: Optional[str] = None
    blockhash_failures: int = 0

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None


@dataclass
class RetryStatistics:
    """Per-submission bookkeeping kept by the engine while it loops."""

    attempts: int = 0
    total_delay_time: float = 0.0
    blockhash_failures: int = 0
    delays: list = field(default_factory=list)

    def record_delay(self, delay: float):
        self.delays.append(delay)
        self.total_delay_time += delay


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_BASE_DELAY",
    "DEFAULT_MAX_DELAY",
    "DEFAULT_BLOCKHASH_RETRY_INTERVAL",
    "DEFAULT_MAX_BLOCKHASH_RETRIES",
    "RETRIABLE_SEND_MARKERS",
    "RETRIABLE_CONFIRMATION_MARKERS",
    "RetriablePredicate",
    "RetryConfig",
    "BackoffStrategy",
    "ExponentialBackoff",
    "ConstantBackoff",
    "BACKOFF_STRATEGIES",
    "calculate_delay",
    "default_is_retriable",
    "is_retriable_error",
    "AttemptOutcome",
    "AttemptEvent",
    "RetryStatistics",
]
