"""
Sample driver: submits a series of small SOL transfers through the
submission engine and records the outcomes.

    python -m solana_submitter.main --num-transactions 5 --max-retries 3
"""

import argparse
import asyncio
import inspect
import logging
import signal
import sys
import time
import traceback
from logging.handlers import RotatingFileHandler
from typing import Awaitable, Callable, List, Optional

from solders.keypair import Keypair

from . import __version__
from .client import LedgerClient, SolanaLedgerClient
from .config import Settings, get_settings
from .exceptions import ConfigurationError, InsufficientFunds, TransactionError
from .metrics import SubmissionMetrics
from .transaction import TransactionService
from .wallet import keypair_from_secret, lamports_to_sol, load_keypair, transfer_instruction

logger = logging.getLogger(__name__)


class GracefulShutdown:
    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self.shutdown_callbacks: List[Callable] = []
        self._shutting_down = False

    def register_callback(self, callback: Callable) -> None:
        self.shutdown_callbacks.append(callback)

    async def trigger_shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        self.shutdown_event.set()

        for callback in reversed(self.shutdown_callbacks):
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback()
                else:
                    callback()
            except Exception as e:
                logger.error(f"Shutdown callback error: {e}")


class ApplicationLogger:
    def __init__(self, settings: Settings):
        self.settings = settings

    def setup(self) -> logging.Logger:
        log_settings = self.settings.logging

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_settings.level.value))
        root_logger.handlers.clear()

        formatter = logging.Formatter(log_settings.format, datefmt=log_settings.date_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if log_settings.file_enabled:
            log_settings.file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_settings.file_path,
                maxBytes=log_settings.file_max_bytes,
                backupCount=log_settings.file_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(file_handler)

        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)

        return logging.getLogger("solana_submitter")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Submit sample transfers with retry and backoff"
    )
    parser.add_argument("--rpc-url", help="Solana RPC URL (devnet by default)")
    parser.add_argument("--keypair-path", help="Path to keypair file")
    parser.add_argument(
        "--num-transactions", type=int, help="Number of sample transactions to send"
    )
    parser.add_argument(
        "--max-retries", type=int, help="Maximum number of retries for each transaction"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Command-line flags take precedence over environment settings."""
    updates = {}
    if args.rpc_url:
        updates["solana"] = settings.solana.model_copy(update={"rpc_url": args.rpc_url})
    if args.keypair_path:
        updates["wallet"] = settings.wallet.model_copy(update={"keypair_path": args.keypair_path})
    if args.num_transactions is not None:
        if args.num_transactions < 0:
            raise ConfigurationError("--num-transactions must be >= 0")
        updates["driver"] = settings.driver.model_copy(
            update={"num_transactions": args.num_transactions}
        )
    if args.max_retries is not None:
        if args.max_retries < 0:
            raise ConfigurationError("--max-retries must be >= 0")
        updates["submission"] = settings.submission.model_copy(
            update={"max_retries": args.max_retries}
        )
    return settings.model_copy(update=updates) if updates else settings


def load_payer(settings: Settings) -> Keypair:
    if settings.wallet.keypair_path:
        return load_keypair(settings.wallet.keypair_path)
    if settings.wallet.private_key is not None:
        return keypair_from_secret(settings.wallet.private_key.get_secret_value())
    logger.info("No keypair provided, generating a new one")
    return Keypair()


async def run_transfers(
    service: TransactionService,
    payer: Keypair,
    settings: Settings,
    metrics: SubmissionMetrics,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    stop_event: Optional[asyncio.Event] = None,
) -> SubmissionMetrics:
    """Submit ``num_transactions`` transfers to fresh recipients, one at a time."""
    driver = settings.driver
    count = driver.num_transactions

    for i in range(count):
        if stop_event is not None and stop_event.is_set():
            logger.info("Stop requested, not sending further transactions")
            break

        logger.info(f"Sending transaction {i + 1}/{count}")
        recipient = Keypair().pubkey()
        instruction = transfer_instruction(payer.pubkey(), recipient, driver.transfer_lamports)

        start = time.monotonic()
        try:
            signature = await service.submit_transaction(payer, [instruction])
        except TransactionError as e:
            logger.error(f"Transaction failed: {e}")
            metrics.record_failure(e)
        else:
            elapsed = time.monotonic() - start
            logger.info(f"Transaction succeeded after {elapsed * 1000:.0f}ms: {signature}")
            metrics.record_success(elapsed)

        if i + 1 < count:
            await sleep(driver.inter_transaction_delay)

    return metrics


async def execute(
    settings: Settings,
    client: LedgerClient,
    payer: Keypair,
    metrics: Optional[SubmissionMetrics] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    """Balance gate followed by the transfer loop. Returns an exit code."""
    metrics = metrics or SubmissionMetrics()
    service = TransactionService(
        client,
        retry_config=settings.to_retry_config(),
        backoff=settings.backoff_strategy(),
        commitment=settings.solana.commitment,
        sleep=sleep,
        on_attempt=metrics.record_attempt,
    )

    logger.info(f"Using address: {payer.pubkey()}")

    try:
        balance = await service.get_balance(payer.pubkey())
    except TransactionError as e:
        logger.error(f"Could not read wallet balance: {e}")
        return 1

    metrics.set_balance(lamports_to_sol(balance))
    logger.info(f"Wallet balance: {lamports_to_sol(balance)} SOL")

    if balance < settings.driver.min_balance_lamports:
        error = InsufficientFunds(
            context={"balance": balance, "required": settings.driver.min_balance_lamports}
        )
        logger.error(f"{error}. Airdrop SOL to your wallet before proceeding.")
        return 0

    await run_transfers(service, payer, settings, metrics, sleep=sleep, stop_event=stop_event)

    logger.info("All transactions completed.")
    logger.info(f"Metrics: {metrics.snapshot()}")
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    shutdown = GracefulShutdown()
    args = parse_args(argv)
    try:
        settings = apply_overrides(get_settings(), args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    ApplicationLogger(settings).setup()

    logger.info("=" * 60)
    logger.info(f"{settings.app_name} v{__version__}")
    logger.info(f"RPC URL: {settings.solana.rpc_url}")
    logger.info(f"Max retries: {settings.submission.max_retries}")
    logger.info("=" * 60)

    try:
        payer = load_payer(settings)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    client = SolanaLedgerClient(
        settings.solana.rpc_url,
        commitment=settings.solana.commitment,
        timeout=settings.solana.timeout,
        confirm_timeout=settings.solana.confirm_timeout,
        poll_interval=settings.solana.poll_interval,
        skip_preflight=settings.solana.skip_preflight,
    )
    shutdown.register_callback(client.close)

    task = asyncio.create_task(
        execute(settings, client, payer, stop_event=shutdown.shutdown_event)
    )

    def signal_handler(sig):
        logger.info(f"Received signal {sig.name}")
        if shutdown.shutdown_event.is_set():
            task.cancel()
        else:
            logger.info("Finishing the in-flight transaction; signal again to abort it")
            shutdown.shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except NotImplementedError:
            pass

    exit_code = 0
    try:
        exit_code = await task
    except asyncio.CancelledError:
        logger.info("Run cancelled")
        exit_code = 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        logger.error(traceback.format_exc())
        exit_code = 1
    finally:
        await shutdown.trigger_shutdown()
        logger.info("Shutdown complete")

    return exit_code


def run() -> None:
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nShutdown requested...")
        sys.exit(0)


if __name__ == "__main__":
    run()
