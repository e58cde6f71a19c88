"""
Transaction submission engine.

``TransactionService`` turns a signer and a list of instructions into exactly
one terminal outcome: a confirmed ``Signature`` or a raised
``TransactionError``. Internally it runs up to ``max_retries + 1`` attempts;
each attempt fetches a fresh blockhash, builds and signs a new transaction,
sends it and waits for confirmation. Failures are classified by a pluggable
predicate; retriable ones back off exponentially and try again.

The service keeps no mutable state between calls, so one instance may serve
any number of concurrent submissions.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, List, Optional, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from .client import CommitmentLevel, LedgerClient, Signer, TransportError
from .exceptions import (
    ConfirmationError,
    InvalidInstruction,
    MaxRetriesExceeded,
    OtherError,
    RpcError,
    SendError,
    TransactionError,
)
from .retry import (
    AttemptEvent,
    AttemptOutcome,
    BackoffStrategy,
    ExponentialBackoff,
    RetriablePredicate,
    RetryConfig,
    RetryStatistics,
    calculate_delay,
    default_is_retriable,
    is_retriable_error,
)

logger = logging.getLogger(__name__)

NOT_CONFIRMED_DETAIL = "Transaction was not confirmed"

SleepFunc = Callable[[float], Awaitable[None]]
AttemptCallback = Callable[[AttemptEvent], None]


def _detail(exc: BaseException) -> str:
    if isinstance(exc, TransportError):
        return exc.message
    if isinstance(exc, TransactionError):
        return exc.detail
    return str(exc) or type(exc).__name__


def _transport_context(exc: BaseException) -> dict:
    code = getattr(exc, "code", None)
    return {"code": code} if code is not None else {}


def build_transaction(
    signer: Signer,
    instructions: Sequence[Instruction],
    blockhash: Hash,
    payer: Optional[Pubkey] = None,
) -> Transaction:
    """Compile ``instructions`` against ``blockhash`` and sign with ``signer``."""
    payer = payer or signer.pubkey()

    try:
        message = Message.new_with_blockhash(list(instructions), payer, blockhash)
    except Exception as e:
        raise InvalidInstruction(str(e)) from e

    try:
        signature = signer.sign_message(bytes(message))
    except Exception as e:
        raise OtherError(f"Failed to sign transaction: {e}") from e

    try:
        return Transaction.populate(message, [signature])
    except Exception as e:
        raise InvalidInstruction(str(e)) from e


class TransactionService:
    """Service for submitting Solana transactions with retry logic."""

    def __init__(
        self,
        client: LedgerClient,
        max_retries: Optional[int] = None,
        *,
        retry_config: Optional[RetryConfig] = None,
        commitment: CommitmentLevel = CommitmentLevel.CONFIRMED,
        is_retriable: RetriablePredicate = default_is_retriable,
        backoff: Optional[BackoffStrategy] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_attempt: Optional[AttemptCallback] = None,
    ):
        config = retry_config or RetryConfig()
        if max_retries is not None:
            config = replace(config, max_retries=max_retries)

        self.client = client
        self.config = config
        self.commitment = CommitmentLevel(commitment)
        self.is_retriable = is_retriable
        self.backoff = backoff or ExponentialBackoff()
        self.on_attempt = on_attempt
        self._sleep = sleep
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    async def get_balance(self, pubkey: Pubkey) -> int:
        """Get the balance of an account in lamports. Never retried."""
        try:
            return await self.client.get_balance(pubkey)
        except Exception as e:
            raise RpcError(_detail(e), context=_transport_context(e)) from e

    async def submit_transaction(
        self,
        signer: Signer,
        instructions: Sequence[Instruction],
    ) -> Signature:
        """
        Submit a transaction with retry logic.

        Args:
            signer: Pays for and signs the transaction
            instructions: Ordered instructions to include

        Returns:
            Signature of the confirmed transaction

        Raises:
            TransactionError: The terminal classified failure. Its context
                carries ``attempts`` and ``elapsed``.
        """
        instructions: List[Instruction] = list(instructions)
        payer = signer.pubkey()
        started = self._clock()
        stats = RetryStatistics()
        attempt = 0

        while True:
            attempt += 1

            if attempt > self.config.max_attempts:
                raise self._terminal(MaxRetriesExceeded(), stats, started)

            backoff = 0.0
            if attempt > 1:
                logger.debug(
                    f"Retrying transaction (attempt {attempt - 1}/{self.max_retries})"
                )
                backoff = calculate_delay(attempt, self.config, self.backoff)
                stats.record_delay(backoff)
                await self._sleep(backoff)

            stats.attempts = attempt
            failures_before = stats.blockhash_failures

            try:
                blockhash = await self._fetch_blockhash(stats)
                transaction = build_transaction(signer, instructions, blockhash, payer)
                signature = await self._send_and_confirm(transaction)
            except TransactionError as err:
                retriable = is_retriable_error(err, self.is_retriable)
                err.is_recoverable = retriable
                self._emit(
                    attempt,
                    started,
                    backoff,
                    AttemptOutcome.RETRIABLE if retriable else AttemptOutcome.FATAL,
                    stats.blockhash_failures - failures_before,
                    error=err,
                )
                logger.warning(f"Transaction failed: {err}")

                if not retriable:
                    raise self._terminal(err, stats, started)
                continue

            self._emit(
                attempt,
                started,
                backoff,
                AttemptOutcome.SUCCESS,
                stats.blockhash_failures - failures_before,
                signature=str(signature),
            )
            logger.info(f"Transaction confirmed after {attempt} attempt(s): {signature}")
            return signature

    async def _fetch_blockhash(self, stats: RetryStatistics) -> Hash:
        """Fetch a fresh blockhash, waiting and re-fetching on failure.

        Failed fetches do not consume an attempt; once
        ``max_blockhash_retries`` re-fetches have also failed the attempt
        fails with ``RpcError``.
        """
        limit = self.config.max_blockhash_retries
        failures = 0

        while True:
            try:
                return await self.client.get_latest_blockhash()
            except Exception as e:
                failures += 1
                stats.blockhash_failures += 1
                logger.warning(f"Failed to get recent blockhash: {_detail(e)}")

                if limit is not None and failures > limit:
                    raise RpcError(_detail(e), context=_transport_context(e)) from e
                await self._sleep(self.config.blockhash_retry_interval)

    async def _send_and_confirm(self, transaction: Transaction) -> Signature:
        """Send and confirm a transaction."""
        try:
            signature = await self.client.send_transaction(transaction)
        except Exception as e:
            raise SendError(_detail(e), context=_transport_context(e)) from e

        try:
            confirmed = await self.client.confirm_transaction(signature, self.commitment)
        except Exception as e:
            raise ConfirmationError(_detail(e), context=_transport_context(e)) from e

        if not confirmed:
            raise ConfirmationError(NOT_CONFIRMED_DETAIL)
        return signature

    def _emit(
        self,
        attempt: int,
        started: float,
        backoff: float,
        outcome: AttemptOutcome,
        blockhash_failures: int,
        error: Optional[TransactionError] = None,
        signature: Optional[str] = None,
    ):
        if self.on_attempt is None:
            return
        self.on_attempt(
            AttemptEvent(
                attempt=attempt,
                elapsed=self._clock() - started,
                backoff=backoff,
                outcome=outcome,
                error=error,
                signature=signature,
                blockhash_failures=blockhash_failures,
            )
        )

    def _terminal(
        self,
        error: TransactionError,
        stats: RetryStatistics,
        started: float,
    ) -> TransactionError:
        error.context.setdefault("attempts", stats.attempts)
        error.context.setdefault("elapsed", round(self._clock() - started, 3))
        if stats.total_delay_time:
            error.context.setdefault("backoff_total", stats.total_delay_time)
        return error


__all__ = [
    "NOT_CONFIRMED_DETAIL",
    "TransactionService",
    "build_transaction",
]
