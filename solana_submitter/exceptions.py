"""
Classified error taxonomy for transaction submission.

Every failure the submission engine hands back to its caller is one of the
classes below. The taxonomy is flat: each class corresponds to exactly one
``ErrorKind`` tag, and the engine never nests one error inside another.

Each exception includes:
- The ``ErrorKind`` tag used by the retriability predicate
- A human-readable ``detail`` (empty for the parameterless kinds)
- A unique error code for logging
- Optional context dictionary (attempt count, elapsed time, ...)
- is_recoverable flag, derived from the default retry policy unless given
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional


class ErrorKind(str, Enum):
    """Tag attached to every classified failure."""
    RPC_ERROR = "rpc_error"
    SEND_ERROR = "send_error"
    CONFIRMATION_ERROR = "confirmation_error"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    INVALID_INSTRUCTION = "invalid_instruction"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    OTHER = "other"


# =============================================================================
# BASE EXCEPTION
# =============================================================================

@dataclass
class TransactionError(Exception):
    """
    Base exception for all classified submission failures.

    Attributes:
        detail: Human-readable description of the underlying failure
        error_code: Unique identifier for the error type (e.g., "TX_003")
        context: Optional dictionary with debugging information
        is_recoverable: Whether this failure may be retried; derived from
            the default policy when not given
        timestamp: When the error occurred
    """
    kind: ClassVar[ErrorKind] = ErrorKind.OTHER
    label: ClassVar[str] = "Other error"

    detail: str = ""
    error_code: str = "TX_000"
    context: dict[str, Any] = field(default_factory=dict)
    is_recoverable: Optional[bool] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.is_recoverable is None:
            from .retry import default_is_retriable

            self.is_recoverable = default_is_retriable(self.kind, self.detail)
        super().__init__(self.message)

    @property
    def message(self) -> str:
        """Display message, e.g. ``"Transaction send error: timeout"``."""
        if self.detail:
            return f"{self.label}: {self.detail}"
        return self.label

    def format_message(self) -> str:
        """Format the error message with code and context."""
        base = f"[{self.error_code}] {self.message}"
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base += f" | Context: {context_str}"
        return base

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "kind": self.kind.value,
            "error_code": self.error_code,
            "message": self.message,
            "detail": self.detail,
            "context": self.context,
            "is_recoverable": self.is_recoverable,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__,
        }

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"detail={self.detail!r}, "
            f"is_recoverable={self.is_recoverable})"
        )


# =============================================================================
# CLASSIFIED ERRORS
# =============================================================================

@dataclass
class RpcError(TransactionError):
    """RPC-layer failure (balance or blockhash fetch)."""
    kind: ClassVar[ErrorKind] = ErrorKind.RPC_ERROR
    label: ClassVar[str] = "RPC error"
    error_code: str = "TX_001"


@dataclass
class SendError(TransactionError):
    """The node refused or never received the signed transaction."""
    kind: ClassVar[ErrorKind] = ErrorKind.SEND_ERROR
    label: ClassVar[str] = "Transaction send error"
    error_code: str = "TX_002"


@dataclass
class ConfirmationError(TransactionError):
    """The transaction was sent but never reached the requested commitment."""
    kind: ClassVar[ErrorKind] = ErrorKind.CONFIRMATION_ERROR
    label: ClassVar[str] = "Transaction confirmation error"
    error_code: str = "TX_003"


@dataclass
class MaxRetriesExceeded(TransactionError):
    """Every allowed attempt failed with a retriable error."""
    kind: ClassVar[ErrorKind] = ErrorKind.MAX_RETRIES_EXCEEDED
    label: ClassVar[str] = "Maximum retries exceeded"
    error_code: str = "TX_004"


@dataclass
class InvalidInstruction(TransactionError):
    """The instructions could not be compiled into a transaction message."""
    kind: ClassVar[ErrorKind] = ErrorKind.INVALID_INSTRUCTION
    label: ClassVar[str] = "Invalid instruction"
    error_code: str = "TX_005"


@dataclass
class InsufficientFunds(TransactionError):
    """The paying account cannot cover the transaction."""
    kind: ClassVar[ErrorKind] = ErrorKind.INSUFFICIENT_FUNDS
    label: ClassVar[str] = "Insufficient funds"
    error_code: str = "TX_006"


@dataclass
class OtherError(TransactionError):
    """Catch-all for failures no other kind can represent."""
    error_code: str = "TX_099"


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

@dataclass
class ConfigurationError(Exception):
    """Error in settings or local key material. Never produced by the engine."""
    message: str
    error_code: str = "CONFIG_001"
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class InvalidKeypairError(ConfigurationError):
    """Keypair file or secret could not be decoded."""
    error_code: str = "WALLET_001"


ERROR_CLASSES: dict[ErrorKind, type[TransactionError]] = {
    cls.kind: cls
    for cls in (
        RpcError,
        SendError,
        ConfirmationError,
        MaxRetriesExceeded,
        InvalidInstruction,
        InsufficientFunds,
        OtherError,
    )
}


def classify_exception(exc: BaseException) -> TransactionError:
    """Return ``exc`` if it is already classified, otherwise wrap it as ``OtherError``."""
    if isinstance(exc, TransactionError):
        return exc
    return OtherError(str(exc) or type(exc).__name__)


def error_from_kind(kind: ErrorKind, detail: str = "", **kwargs: Any) -> TransactionError:
    """Build the exception class registered for ``kind``."""
    return ERROR_CLASSES[kind](detail, **kwargs)


__all__ = [
    "ErrorKind",
    "TransactionError",
    "RpcError",
    "SendError",
    "ConfirmationError",
    "MaxRetriesExceeded",
    "InvalidInstruction",
    "InsufficientFunds",
    "OtherError",
    "ConfigurationError",
    "InvalidKeypairError",
    "ERROR_CLASSES",
    "classify_exception",
    "error_from_kind",
]
