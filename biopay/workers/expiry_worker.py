"""
Pending transaction expiry worker.

Periodically cancels PENDING transactions that were never verified within
the configured window.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from biopay.config import get_settings
from biopay.core.orchestrator import PaymentOrchestrator
from biopay.database.connection import close_db, init_db, session_scope
from biopay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class ExpiryWorker:
    """
    Polls for stale PENDING transactions and cancels them.

    Args:
        orchestrator: Orchestrator performing the cancellation
        interval_seconds: Delay between sweeps
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        interval_seconds: Optional[float] = None,
        session_factory: Any = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = (
            interval_seconds or orchestrator.settings.expiry_check_interval_seconds
        )
        self._session_factory = session_factory
        self._running = False

    async def run_once(self) -> int:
        """Run one sweep in a fresh session."""
        async with session_scope(self._session_factory) as db:
            return await self.orchestrator.expire_stale_pending(db)

    async def start(self) -> None:
        """Sweep until ``stop`` is called."""
        self._running = True
        logger.info("expiry_worker_started", interval_seconds=self.interval_seconds)

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                # Keep sweeping; the next run retries the same rows
                logger.error("expiry_worker_error", error=str(e))
            await asyncio.sleep(self.interval_seconds)

        logger.info("expiry_worker_stopped")

    def stop(self) -> None:
        self._running = False


async def start_expiry_worker() -> None:
    """Run the expiry worker as a standalone process."""
    setup_logging()
    settings = get_settings()
    worker = ExpiryWorker(PaymentOrchestrator(settings=settings))

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("expiry_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await init_db()
        await worker.start()
    finally:
        await close_db()


def main() -> None:
    asyncio.run(start_expiry_worker())


if __name__ == "__main__":
    main()
