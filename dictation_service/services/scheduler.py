"""
Background task scheduler for transcription jobs
"""

import asyncio
from typing import Dict

from dictation_service.core.logging import get_logger
from dictation_service.services.transcription_worker import (
    FailureReason,
    TranscriptionJob,
    TranscriptionWorker,
)

logger = get_logger(__name__)


class TranscriptionScheduler:
    """
    Runs transcription jobs as asyncio tasks owned by the application, not by
    a request. At most one task exists per dictation id and at most
    ``max_concurrency`` of them talk to the engines at the same time.
    """

    def __init__(self, worker: TranscriptionWorker, max_concurrency: int):
        self.worker = worker
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def is_running(self, dictation_id: str) -> bool:
        return dictation_id in self._tasks

    def submit(self, job: TranscriptionJob) -> bool:
        """Schedules ``job`` and returns immediately. Refuses a second job for the same id."""
        if self._closed:
            logger.warning("Scheduler is shut down, refusing job", dictation_id=job.dictation_id)
            return False
        if job.dictation_id in self._tasks:
            logger.warning("Transcription already scheduled", dictation_id=job.dictation_id)
            return False

        task = asyncio.create_task(self._run(job), name=f"transcribe-{job.dictation_id}")
        self._tasks[job.dictation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.dictation_id, None))
        return True

    async def _run(self, job: TranscriptionJob) -> None:
        try:
            async with self._semaphore:
                await self.worker.run(job)
        except asyncio.CancelledError:
            await self.worker.fail(job.dictation_id, FailureReason.CANCELLED, "cancelled")
            raise

    async def wait_idle(self) -> None:
        """Waits until every scheduled job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self, grace_seconds: float) -> None:
        """Stops accepting jobs, lets running ones finish for ``grace_seconds``, then cancels the rest."""
        self._closed = True
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} transcription(s) to finish")
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} transcription(s) on shutdown")
            await asyncio.gather(*pending, return_exceptions=True)
