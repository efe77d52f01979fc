"""
Audit dispatcher: bounded queue plus a fixed pool of worker tasks.

Settlement code hands audit jobs to the dispatcher and returns at once.
Workers run the jobs in the background; a job's failure is logged and never
reaches the submitter. When the queue is full the job is dropped with an
error log rather than making a payment wait for the relay.
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from biopay.config import Settings, get_settings
from biopay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AuditJob = Callable[[], Awaitable[Any]]


class AuditDispatcher:
    """
    Runs audit jobs on a pool of asyncio worker tasks.

    Workers are started lazily on the first submit, inside the running
    event loop.
    """

    def __init__(
        self,
        worker_count: Optional[int] = None,
        queue_size: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.worker_count = worker_count or settings.audit_worker_count
        self.queue_size = queue_size or settings.audit_queue_size
        self._queue: asyncio.Queue[AuditJob] = asyncio.Queue(maxsize=self.queue_size)
        self._workers: List[asyncio.Task] = []

        logger.info(
            "audit_dispatcher_initialized",
            worker_count=self.worker_count,
            queue_size=self.queue_size,
        )

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker tasks if they are not running yet."""
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._workers = [
            loop.create_task(self._worker(index), name=f"audit-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("audit_dispatcher_started", worker_count=self.worker_count)

    def submit(self, job: AuditJob, job_name: str = "audit_job") -> bool:
        """
        Queue a job without waiting for it.

        Args:
            job: Zero-argument coroutine function to run
            job_name: Label used in logs

        Returns:
            bool: False if the queue was full and the job was dropped
        """
        self.start()
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error(
                "audit_job_dropped_queue_full",
                job_name=job_name,
                queue_size=self.queue_size,
            )
            metrics.record_audit_outcome("dropped")
            return False

        metrics.set_audit_queue_depth(self._queue.qsize())
        return True

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job()
            except Exception as e:
                logger.error("audit_job_failed", worker=index, error=str(e))
            finally:
                self._queue.task_done()
                metrics.set_audit_queue_depth(self._queue.qsize())

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the workers.

        Args:
            drain: Finish queued jobs before stopping
        """
        if drain and self.running:
            await self.join()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        logger.info("audit_dispatcher_stopped", dropped_pending=self._queue.qsize())
