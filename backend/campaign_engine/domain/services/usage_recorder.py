"""
Usage Recorder
Background hand-off for usage bookkeeping so billed operations never wait
on the ledger write.
"""
import asyncio
import logging
from typing import Optional, Tuple

from campaign_engine.domain.models.usage import UsageRecord
from campaign_engine.domain.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class UsageRecorder:
    """
    Bounded queue drained by one background task.

    submit() returns immediately. Failed writes are logged and counted,
    and flush()/stop() drain whatever is still queued at shutdown.
    """

    def __init__(self, ledger: UsageLedger, maxsize: int = 1000):
        self._ledger = ledger
        self._queue: asyncio.Queue[Tuple[str, UsageRecord]] = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None

        self._recorded = 0
        self._failed = 0
        self._dropped = 0

    def start(self) -> None:
        """Start the drain task on the running loop (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.debug("UsageRecorder started")

    def submit(self, tenant_id: str, record: UsageRecord) -> bool:
        """
        Queue a usage record without waiting for it to be written.

        Returns:
            False when the queue is full and the record was dropped
        """
        self.start()
        try:
            self._queue.put_nowait((tenant_id, record))
            return True
        except asyncio.QueueFull:
            self._dropped += 1
            logger.error(
                f"Usage queue full, dropped {record.provider} record for tenant {tenant_id} "
                f"(tokens={record.tokens}, duration={record.duration_seconds}s)"
            )
            return False

    async def flush(self) -> None:
        """Wait until every queued record has been written (or has failed)."""
        if self._task is None and self._queue.empty():
            return
        self.start()
        await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue, then stop the background task."""
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(
            f"UsageRecorder stopped. Recorded: {self._recorded}, "
            f"Failed: {self._failed}, Dropped: {self._dropped}"
        )

    async def _run(self) -> None:
        while True:
            tenant_id, record = await self._queue.get()
            try:
                await self._ledger.record_usage(tenant_id, record)
                self._recorded += 1
            except Exception as e:
                self._failed += 1
                logger.error(f"Failed to record usage for tenant {tenant_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def get_stats(self) -> dict:
        return {
            "pending": self._queue.qsize(),
            "recorded": self._recorded,
            "failed": self._failed,
            "dropped": self._dropped,
        }
