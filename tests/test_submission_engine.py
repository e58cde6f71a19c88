"""
Tests for TransactionService.submit_transaction() and get_balance().

All tests use a fake ledger client, a keypair-backed signer and a recording
sleep, so no network calls and no real delays.

Test plan:
- Retry exhaustion: R+1 sends then MaxRetriesExceeded, R backoff sleeps
- Fatal errors return on first occurrence
- Backoff schedule 0.5s, 1s, 2s ... with optional ceiling
- Send/confirm sequencing and ConfirmationError on an unconfirmed result
- Blockhash refresh: fresh per attempt, failed fetches do not consume an
  attempt, configurable re-fetch ceiling
- Attempt events, terminal context, concurrency and cancellation
- Balance query: single call, RpcError on failure
"""

import asyncio

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature

from solana_submitter import transaction as transaction_module
from solana_submitter.client import CommitmentLevel, TransportError
from solana_submitter.exceptions import (
    ConfirmationError,
    ErrorKind,
    InvalidInstruction,
    MaxRetriesExceeded,
    OtherError,
    RpcError,
    SendError,
)
from solana_submitter.retry import AttemptOutcome, RetryConfig
from solana_submitter.transaction import (
    NOT_CONFIRMED_DETAIL,
    TransactionService,
    build_transaction,
)
from solana_submitter.wallet import transfer_instruction

from .fakes import BlockingSleep, FakeLedgerClient, FakeSigner, RecordingSleep

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _instructions(signer: FakeSigner, lamports: int = 100):
    return [transfer_instruction(signer.pubkey(), Keypair().pubkey(), lamports)]


def _service(client, max_retries=3, sleep=None, **kwargs):
    return TransactionService(
        client,
        max_retries,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


class TestSubmitSuccess:
    @pytest.mark.asyncio
    async def test_first_attempt_success_returns_signature(self) -> None:
        client = FakeLedgerClient()
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(client, sleep=sleep)

        signature = await service.submit_transaction(signer, _instructions(signer))

        assert isinstance(signature, Signature)
        assert signature == client.sent[0].signatures[0]
        assert len(client.sent) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_confirms_at_confirmed_commitment(self) -> None:
        client = FakeLedgerClient()
        signer = FakeSigner()
        service = _service(client)

        signature = await service.submit_transaction(signer, _instructions(signer))

        assert client.confirm_calls == [(signature, CommitmentLevel.CONFIRMED)]

    @pytest.mark.asyncio
    async def test_transaction_is_signed_by_payer_over_fresh_blockhash(self) -> None:
        blockhash = Hash.new_unique()
        client = FakeLedgerClient(blockhashes=[blockhash])
        signer = FakeSigner()
        service = _service(client)

        await service.submit_transaction(signer, _instructions(signer))

        tx = client.sent[0]
        assert tx.message.recent_blockhash == blockhash
        assert tx.message.account_keys[0] == signer.pubkey()
        assert tx.signatures[0].verify(signer.pubkey(), bytes(tx.message))

    @pytest.mark.asyncio
    async def test_end_to_end_timeouts_then_success(self) -> None:
        client = FakeLedgerClient(
            send_results=[TransportError("timeout")] * 3,
            confirm_results=[True],
        )
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(client, max_retries=3, sleep=sleep)

        signature = await service.submit_transaction(signer, _instructions(signer))

        assert len(client.sent) == 4
        assert signature == client.sent[-1].signatures[0]
        assert sleep.delays == [0.5, 1.0, 2.0]


# ---------------------------------------------------------------------------
# Retry exhaustion
# ---------------------------------------------------------------------------


class TestRetryExhaustion:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 1, 2, 3, 5])
    async def test_always_retriable_attempts_exactly_r_plus_one(self, max_retries: int) -> None:
        client = FakeLedgerClient(send_results=[TransportError("timeout")] * 20)
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(client, max_retries=max_retries, sleep=sleep)

        with pytest.raises(MaxRetriesExceeded) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert len(client.sent) == max_retries + 1
        assert len(sleep.delays) == max_retries
        assert exc_info.value.context["attempts"] == max_retries + 1
        assert str(exc_info.value) == "Maximum retries exceeded"

    @pytest.mark.asyncio
    async def test_confirmation_timeouts_exhaust_retries(self) -> None:
        client = FakeLedgerClient(
            confirm_results=[TransportError("connection closed before message completed")] * 10
        )
        signer = FakeSigner()
        service = _service(client, max_retries=2)

        with pytest.raises(MaxRetriesExceeded):
            await service.submit_transaction(signer, _instructions(signer))

        assert len(client.sent) == 3
        assert len(client.confirm_calls) == 3

    @pytest.mark.asyncio
    async def test_each_attempt_resigns_with_fresh_blockhash(self) -> None:
        hashes = [Hash.new_unique() for _ in range(3)]
        client = FakeLedgerClient(
            blockhashes=hashes,
            send_results=[TransportError("blockhash not found")] * 2,
        )
        signer = FakeSigner()
        service = _service(client, max_retries=2)

        await service.submit_transaction(signer, _instructions(signer))

        assert [tx.message.recent_blockhash for tx in client.sent] == hashes
        assert len({tx.signatures[0] for tx in client.sent}) == 3
        assert len(signer.signed) == 3


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


class TestFatalErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message",
        [
            "insufficient funds for transaction",
            "Transaction simulation failed: custom program error: 0x1",
            "Timeout",  # matching is case-sensitive
        ],
    )
    async def test_unmatched_send_error_returns_immediately(self, message: str) -> None:
        client = FakeLedgerClient(send_results=[TransportError(message)])
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(client, sleep=sleep)

        with pytest.raises(SendError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.detail == message
        assert exc_info.value.context["attempts"] == 1
        assert len(client.sent) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_blockhash_not_found_is_retried(self) -> None:
        client = FakeLedgerClient(
            send_results=[TransportError("blockhash not found, please retry")]
        )
        signer = FakeSigner()
        service = _service(client)

        await service.submit_transaction(signer, _instructions(signer))

        assert len(client.sent) == 2

    @pytest.mark.asyncio
    async def test_unconfirmed_result_is_confirmation_error(self) -> None:
        client = FakeLedgerClient(confirm_results=[False])
        signer = FakeSigner()
        service = _service(client)

        with pytest.raises(ConfirmationError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.detail == NOT_CONFIRMED_DETAIL
        assert str(exc_info.value) == (
            "Transaction confirmation error: Transaction was not confirmed"
        )
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_confirm_transport_failure_without_marker_is_fatal(self) -> None:
        client = FakeLedgerClient(confirm_results=[TransportError("node is unhealthy")])
        signer = FakeSigner()
        service = _service(client)

        with pytest.raises(ConfirmationError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.detail == "node is unhealthy"

    @pytest.mark.asyncio
    async def test_signer_failure_is_other_error(self) -> None:
        client = FakeLedgerClient()
        signer = FakeSigner(should_raise=RuntimeError("hardware wallet unplugged"))
        service = _service(client)

        with pytest.raises(OtherError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert "hardware wallet unplugged" in exc_info.value.detail
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_uncompilable_message_is_invalid_instruction(self, monkeypatch) -> None:
        class BrokenMessage:
            @staticmethod
            def new_with_blockhash(instructions, payer, blockhash):
                raise ValueError("account index out of bounds")

        monkeypatch.setattr(transaction_module, "Message", BrokenMessage)
        client = FakeLedgerClient()
        signer = FakeSigner()
        service = _service(client)

        with pytest.raises(InvalidInstruction) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.detail == "account index out of bounds"
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_custom_predicate_replaces_substring_policy(self) -> None:
        client = FakeLedgerClient(
            send_results=[TransportError("insufficient funds for transaction")] * 10
        )
        signer = FakeSigner()
        service = _service(
            client,
            max_retries=2,
            is_retriable=lambda kind, detail: kind is ErrorKind.SEND_ERROR,
        )

        with pytest.raises(MaxRetriesExceeded):
            await service.submit_transaction(signer, _instructions(signer))

        assert len(client.sent) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_reports_not_recoverable(self) -> None:
        client = FakeLedgerClient(
            send_results=[TransportError("insufficient funds for transaction")]
        )
        signer = FakeSigner()
        service = _service(client)

        with pytest.raises(SendError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.is_recoverable is False
        assert exc_info.value.to_dict()["is_recoverable"] is False

    @pytest.mark.asyncio
    async def test_recoverable_flag_follows_injected_predicate(self) -> None:
        client = FakeLedgerClient(send_results=[TransportError("timeout")])
        signer = FakeSigner()
        service = _service(client, is_retriable=lambda kind, detail: False)

        with pytest.raises(SendError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.is_recoverable is False


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    @pytest.mark.asyncio
    async def test_backoff_doubles_from_half_second(self) -> None:
        client = FakeLedgerClient(send_results=[TransportError("too many requests")] * 10)
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(
            client,
            max_retries=5,
            sleep=sleep,
            retry_config=RetryConfig(max_delay=None),
        )

        with pytest.raises(MaxRetriesExceeded) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert sleep.delays == [0.5, 1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.context["backoff_total"] == pytest.approx(15.5)

    @pytest.mark.asyncio
    async def test_backoff_ceiling_caps_each_delay(self) -> None:
        client = FakeLedgerClient(send_results=[TransportError("socket closed")] * 10)
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(
            client,
            max_retries=4,
            sleep=sleep,
            retry_config=RetryConfig(max_delay=1.0),
        )

        with pytest.raises(MaxRetriesExceeded):
            await service.submit_transaction(signer, _instructions(signer))

        assert sleep.delays == [0.5, 1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_large_retry_budget_stays_at_ceiling(self) -> None:
        max_retries = 1100
        client = FakeLedgerClient(
            send_results=[TransportError("timeout")] * (max_retries + 1)
        )
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(client, max_retries=max_retries, sleep=sleep)

        with pytest.raises(MaxRetriesExceeded) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert len(client.sent) == max_retries + 1
        assert len(sleep.delays) == max_retries
        assert sleep.delays[-1] == 30.0
        assert max(sleep.delays) == 30.0
        assert exc_info.value.context["attempts"] == max_retries + 1

    def test_max_retries_argument_overrides_config(self) -> None:
        service = TransactionService(
            FakeLedgerClient(), 7, retry_config=RetryConfig(max_retries=1, base_delay=0.25)
        )

        assert service.max_retries == 7
        assert service.config.base_delay == 0.25

    def test_negative_max_retries_rejected(self) -> None:
        with pytest.raises(ValueError):
            TransactionService(FakeLedgerClient(), -1)


# ---------------------------------------------------------------------------
# Blockhash refresh
# ---------------------------------------------------------------------------


class TestBlockhashRefresh:
    @pytest.mark.asyncio
    async def test_fetch_failures_do_not_consume_attempts(self) -> None:
        client = FakeLedgerClient(
            blockhashes=[TransportError("connection refused")] * 2,
        )
        signer = FakeSigner()
        sleep = RecordingSleep()
        events = []
        service = _service(client, max_retries=0, sleep=sleep, on_attempt=events.append)

        await service.submit_transaction(signer, _instructions(signer))

        assert client.blockhash_calls == 3
        assert sleep.delays == [1.0, 1.0]
        assert len(client.sent) == 1
        assert [e.attempt for e in events] == [1]
        assert events[0].blockhash_failures == 2

    @pytest.mark.asyncio
    async def test_unbounded_fetch_retries_when_ceiling_disabled(self) -> None:
        client = FakeLedgerClient(blockhashes=[TransportError("rpc down")] * 25)
        signer = FakeSigner()
        sleep = RecordingSleep()
        service = _service(
            client,
            max_retries=0,
            sleep=sleep,
            retry_config=RetryConfig(max_blockhash_retries=None),
        )

        await service.submit_transaction(signer, _instructions(signer))

        assert sleep.delays == [1.0] * 25
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_fetch_ceiling_fails_attempt_with_rpc_error(self) -> None:
        client = FakeLedgerClient(blockhashes=[TransportError("rpc down")] * 20)
        signer = FakeSigner()
        sleep = RecordingSleep()
        events = []
        service = _service(
            client,
            max_retries=1,
            sleep=sleep,
            retry_config=RetryConfig(max_blockhash_retries=2),
            on_attempt=events.append,
        )

        with pytest.raises(MaxRetriesExceeded):
            await service.submit_transaction(signer, _instructions(signer))

        assert client.blockhash_calls == 6
        assert sleep.delays == [1.0, 1.0, 0.5, 1.0, 1.0]
        assert client.sent == []
        assert [e.kind for e in events] == [ErrorKind.RPC_ERROR, ErrorKind.RPC_ERROR]
        assert all(e.outcome is AttemptOutcome.RETRIABLE for e in events)
        assert events[0].error.detail == "rpc down"


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


class TestAttemptEvents:
    @pytest.mark.asyncio
    async def test_one_event_per_attempt(self) -> None:
        client = FakeLedgerClient(send_results=[TransportError("timeout")] * 3)
        signer = FakeSigner()
        events = []
        service = _service(client, max_retries=3, on_attempt=events.append)

        signature = await service.submit_transaction(signer, _instructions(signer))

        assert [e.attempt for e in events] == [1, 2, 3, 4]
        assert [e.backoff for e in events] == [0.0, 0.5, 1.0, 2.0]
        assert [e.outcome for e in events] == [AttemptOutcome.RETRIABLE] * 3 + [
            AttemptOutcome.SUCCESS
        ]
        assert all(e.kind is ErrorKind.SEND_ERROR for e in events[:3])
        assert events[-1].signature == str(signature)
        assert events[-1].error is None

    @pytest.mark.asyncio
    async def test_fatal_attempt_event(self) -> None:
        client = FakeLedgerClient(send_results=[TransportError("invalid account data")])
        signer = FakeSigner()
        events = []
        service = _service(client, on_attempt=events.append)

        with pytest.raises(SendError):
            await service.submit_transaction(signer, _instructions(signer))

        assert len(events) == 1
        assert events[0].outcome is AttemptOutcome.FATAL

    @pytest.mark.asyncio
    async def test_transport_code_carried_in_context(self) -> None:
        client = FakeLedgerClient(
            send_results=[TransportError("too many requests", code=429)]
        )
        signer = FakeSigner()
        events = []
        service = _service(client, on_attempt=events.append)

        await service.submit_transaction(signer, _instructions(signer))

        assert events[0].error.context["code"] == 429

    @pytest.mark.asyncio
    async def test_elapsed_reported_from_clock(self) -> None:
        ticks = iter(range(100))
        client = FakeLedgerClient(send_results=[TransportError("bad signature")])
        signer = FakeSigner()
        service = _service(client, clock=lambda: float(next(ticks)))

        with pytest.raises(SendError) as exc_info:
            await service.submit_transaction(signer, _instructions(signer))

        assert exc_info.value.context["elapsed"] > 0


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_submissions_share_one_service(self) -> None:
        client = FakeLedgerClient()
        service = TransactionService(client, 3)
        signers = [FakeSigner() for _ in range(5)]

        signatures = await asyncio.gather(
            *(service.submit_transaction(s, _instructions(s)) for s in signers)
        )

        assert len(set(signatures)) == 5
        assert len(client.sent) == 5
        assert {tx.message.account_keys[0] for tx in client.sent} == {
            s.pubkey() for s in signers
        }

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self) -> None:
        client = FakeLedgerClient(send_results=[TransportError("timeout")] * 5)
        signer = FakeSigner()
        sleep = BlockingSleep()
        service = _service(client, sleep=sleep)

        task = asyncio.create_task(service.submit_transaction(signer, _instructions(signer)))
        await asyncio.wait_for(sleep.entered.wait(), timeout=1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert sleep.delays == [0.5]
        assert len(client.sent) == 1


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


class TestGetBalance:
    @pytest.mark.asyncio
    async def test_returns_lamports(self) -> None:
        client = FakeLedgerClient(balance=2_500_000)
        service = _service(client)
        pubkey = Keypair().pubkey()

        assert await service.get_balance(pubkey) == 2_500_000
        assert client.balance_calls == [pubkey]

    @pytest.mark.asyncio
    async def test_transport_failure_is_rpc_error_without_retry(self) -> None:
        client = FakeLedgerClient(balance_error=TransportError("connection refused"))
        sleep = RecordingSleep()
        service = _service(client, sleep=sleep)

        with pytest.raises(RpcError) as exc_info:
            await service.get_balance(Keypair().pubkey())

        assert exc_info.value.detail == "connection refused"
        assert str(exc_info.value) == "RPC error: connection refused"
        assert len(client.balance_calls) == 1
        assert sleep.delays == []


# ---------------------------------------------------------------------------
# build_transaction
# ---------------------------------------------------------------------------


class TestBuildTransaction:
    def test_builds_signed_transaction(self) -> None:
        signer = FakeSigner()
        blockhash = Hash.new_unique()

        tx = build_transaction(signer, _instructions(signer), blockhash)

        assert tx.message.recent_blockhash == blockhash
        assert len(tx.signatures) == 1
        assert signer.signed == [bytes(tx.message)]
