"""
Solana Transaction Submitter

Submits signed transactions to a Solana RPC node with bounded retry,
exponential backoff and retriable/fatal error classification.
"""

__version__ = "1.0.0"

from .client import CommitmentLevel, LedgerClient, Signer, SolanaLedgerClient, TransportError
from .exceptions import (
    ConfirmationError,
    ErrorKind,
    InsufficientFunds,
    InvalidInstruction,
    MaxRetriesExceeded,
    OtherError,
    RpcError,
    SendError,
    TransactionError,
)
from .metrics import SubmissionMetrics
from .retry import AttemptEvent, AttemptOutcome, RetryConfig, default_is_retriable
from .transaction import TransactionService

__all__ = [
    "CommitmentLevel",
    "LedgerClient",
    "Signer",
    "SolanaLedgerClient",
    "TransportError",
    "ErrorKind",
    "TransactionError",
    "RpcError",
    "SendError",
    "ConfirmationError",
    "MaxRetriesExceeded",
    "InvalidInstruction",
    "InsufficientFunds",
    "OtherError",
    "SubmissionMetrics",
    "AttemptEvent",
    "AttemptOutcome",
    "RetryConfig",
    "default_is_retriable",
    "TransactionService",
]
