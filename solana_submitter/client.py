"""
Ledger client and signer boundaries.

The submission engine depends on the two protocols defined here, never on
a concrete RPC library. ``SolanaLedgerClient`` is the production
implementation over ``solana.rpc.async_api.AsyncClient``; tests supply
their own fakes.

Every failure surfaced by ``SolanaLedgerClient`` is a ``TransportError``
whose message keeps the wording the retry policy matches on ("timeout",
"connection closed", "too many requests", ...).
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 30.0
DEFAULT_CONFIRMATION_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.5


class CommitmentLevel(str, Enum):
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @property
    def rank(self) -> int:
        return _COMMITMENT_RANK[self]


_COMMITMENT_RANK = {
    CommitmentLevel.PROCESSED: 0,
    CommitmentLevel.CONFIRMED: 1,
    CommitmentLevel.FINALIZED: 2,
}


class TransportError(Exception):
    """Failure talking to the ledger node."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code


# =========================================================================
# Protocols
# =========================================================================


@runtime_checkable
class LedgerClient(Protocol):
    """Network operations the submission engine consumes.

    Implementations raise on transport failure; the engine decides how
    each failure is classified.
    """

    async def get_balance(self, pubkey: Pubkey) -> int:
        """Balance of ``pubkey`` in lamports."""
        ...

    async def get_latest_blockhash(self) -> Hash:
        """Most recent blockhash to anchor a new transaction."""
        ...

    async def send_transaction(self, transaction: Transaction) -> Signature:
        """Submit a signed transaction, returning its signature."""
        ...

    async def confirm_transaction(
        self,
        signature: Signature,
        commitment: CommitmentLevel,
    ) -> bool:
        """Whether ``signature`` reached ``commitment`` without an on-chain error."""
        ...


@runtime_checkable
class Signer(Protocol):
    """Key holder able to sign a serialized message.

    ``solders.keypair.Keypair`` satisfies this protocol as-is.
    """

    def pubkey(self) -> Pubkey:
        ...

    def sign_message(self, message: bytes) -> Signature:
        ...


# =========================================================================
# Error translation
# =========================================================================


def _iter_causes(exc: BaseException):
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _prefixed(prefix: str, cause: BaseException) -> str:
    text = str(cause)
    return f"{prefix}: {text}" if text else prefix


def describe_rpc_failure(exc: BaseException) -> TransportError:
    """Turn a solana-py / httpx failure into a ``TransportError``."""
    if isinstance(exc, TransportError):
        return exc

    for cause in _iter_causes(exc):
        if isinstance(cause, (httpx.TimeoutException, asyncio.TimeoutError)):
            return TransportError(_prefixed("timeout", cause))
        if isinstance(cause, httpx.HTTPStatusError):
            status = cause.response.status_code
            if status == 429:
                return TransportError("too many requests", code=status)
            return TransportError(f"HTTP {status}: {cause}", code=status)
        if isinstance(cause, (httpx.RemoteProtocolError, httpx.NetworkError)):
            return TransportError(_prefixed("connection closed", cause))

    if isinstance(exc, RPCException) and exc.args:
        error = exc.args[0]
        message = getattr(error, "message", None) or str(error)
        code = getattr(error, "code", None)
        return TransportError(message, code=code)

    return TransportError(str(exc) or type(exc).__name__)


# =========================================================================
# Concrete client
# =========================================================================


class SolanaLedgerClient:
    """``LedgerClient`` backed by solana-py's ``AsyncClient``."""

    def __init__(
        self,
        rpc_url: str,
        commitment: CommitmentLevel = CommitmentLevel.CONFIRMED,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        confirm_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        skip_preflight: bool = False,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = CommitmentLevel(commitment)
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.skip_preflight = skip_preflight
        self._client = client or AsyncClient(
            rpc_url,
            commitment=Commitment(self.commitment.value),
            timeout=timeout,
        )

    async def close(self):
        await self._client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def get_balance(self, pubkey: Pubkey) -> int:
        try:
            response = await self._client.get_balance(
                pubkey, commitment=Commitment(self.commitment.value)
            )
        except (SolanaRpcException, RPCException, httpx.HTTPError) as e:
            raise describe_rpc_failure(e) from e
        return response.value

    async def get_latest_blockhash(self) -> Hash:
        try:
            response = await self._client.get_latest_blockhash(
                commitment=Commitment(self.commitment.value)
            )
        except (SolanaRpcException, RPCException, httpx.HTTPError) as e:
            raise describe_rpc_failure(e) from e

        if response.value is None:
            raise TransportError("blockhash not found in node response")
        logger.debug(f"Fetched blockhash: {response.value.blockhash}")
        return response.value.blockhash

    async def send_transaction(self, transaction: Transaction) -> Signature:
        opts = TxOpts(
            skip_preflight=self.skip_preflight,
            preflight_commitment=Commitment(self.commitment.value),
        )
        try:
            response = await self._client.send_raw_transaction(bytes(transaction), opts=opts)
        except (SolanaRpcException, RPCException, httpx.HTTPError) as e:
            raise describe_rpc_failure(e) from e

        if response.value is None:
            raise TransportError("Empty response from sendTransaction")
        return response.value

    async def get_status(self, signature: Signature) -> Optional[CommitmentLevel]:
        """Commitment reached by ``signature``; raises if it failed on-chain."""
        try:
            response = await self._client.get_signature_statuses([signature])
        except (SolanaRpcException, RPCException, httpx.HTTPError) as e:
            raise describe_rpc_failure(e) from e

        if not response.value or response.value[0] is None:
            return None

        status = response.value[0]
        if status.err:
            raise _OnChainFailure(str(status.err))

        status_str = str(status.confirmation_status).lower()
        if "finalized" in status_str:
            return CommitmentLevel.FINALIZED
        if "confirmed" in status_str:
            return CommitmentLevel.CONFIRMED
        return CommitmentLevel.PROCESSED

    async def confirm_transaction(
        self,
        signature: Signature,
        commitment: CommitmentLevel = CommitmentLevel.CONFIRMED,
    ) -> bool:
        target = CommitmentLevel(commitment)
        deadline = time.monotonic() + self.confirm_timeout

        while True:
            try:
                reached = await self.get_status(signature)
            except _OnChainFailure as e:
                logger.warning(f"Transaction {signature} failed on-chain: {e}")
                return False

            if reached is not None and reached.rank >= target.rank:
                return True
            if time.monotonic() >= deadline:
                logger.debug(
                    f"Transaction {signature} not {target.value} after {self.confirm_timeout}s"
                )
                return False
            await asyncio.sleep(self.poll_interval)


class _OnChainFailure(Exception):
    pass


__all__ = [
    "CommitmentLevel",
    "TransportError",
    "LedgerClient",
    "Signer",
    "SolanaLedgerClient",
    "describe_rpc_failure",
    "DEFAULT_RPC_TIMEOUT",
    "DEFAULT_CONFIRMATION_TIMEOUT",
    "DEFAULT_POLL_INTERVAL",
]
