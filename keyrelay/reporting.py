"""Non-blocking delivery of request outcomes to the credential pool."""

import asyncio
import logging
from typing import Optional, Tuple

from keyrelay.errors import FailureInfo
from keyrelay.pool_client import PoolClient

logger = logging.getLogger(__name__)

Outcome = Tuple[int, Optional[FailureInfo]]


class OutcomeReporter:
    """Queues success/failure reports and delivers them on a worker task.

    Callers never wait for the pool to persist an outcome. Delivery errors are
    logged instead of being lost with an unawaited coroutine.
    """

    def __init__(self, pool_client: PoolClient):
        self._pool_client = pool_client
        self._queue: "asyncio.Queue[Outcome]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def report_success(self, index: int) -> None:
        self._enqueue((index, None))

    def report_failure(self, index: int, failure: FailureInfo) -> None:
        self._enqueue((index, failure))

    def _enqueue(self, outcome: Outcome) -> None:
        self._queue.put_nowait(outcome)
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            index, failure = await self._queue.get()
            try:
                if failure is None:
                    await self._pool_client.report_success(index)
                else:
                    await self._pool_client.report_failure(index, failure)
            except Exception:
                logger.exception("Failed to deliver outcome for credential %s", index)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued outcome has been delivered."""
        await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
