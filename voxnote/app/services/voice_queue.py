from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from voxnote.app.domain.errors import CollaboratorError
from voxnote.app.infra.messaging.base import InboundMessage
from voxnote.app.services.voice_pipeline import VoiceNotePipeline

log = logging.getLogger("voice_queue")


@dataclass(slots=True)
class VoiceNoteJob:
    user_id: str
    message: InboundMessage
    attempts: int = 0

    def next_attempt(self) -> "VoiceNoteJob":
        return VoiceNoteJob(
            user_id=self.user_id,
            message=self.message,
            attempts=self.attempts + 1,
        )


class VoiceNoteQueue:
    def __init__(
        self,
        pipeline: VoiceNotePipeline,
        concurrency: int = 4,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
    ) -> None:
        self._pipeline = pipeline
        self._concurrency = max(1, concurrency)
        self._max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay
        self._queue: "asyncio.Queue[Optional[VoiceNoteJob]]" = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._retries: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    async def start(self) -> None:
        async with self._lock:
            if self.running:
                return
            self._workers = [
                asyncio.create_task(self._run(), name=f"voice-worker-{index}")
                for index in range(self._concurrency)
            ]
            log.info("voice.queue_started workers=%d", self._concurrency)

    async def stop(self) -> None:
        async with self._lock:
            if not self._workers:
                return
            for task in list(self._retries):
                task.cancel()
            for _ in self._workers:
                await self._queue.put(None)
            try:
                await asyncio.gather(*self._workers, return_exceptions=True)
            finally:
                self._workers = []
                log.info("voice.queue_stopped")

    async def submit(self, user_id: str, message: InboundMessage) -> None:
        await self._queue.put(VoiceNoteJob(user_id=user_id, message=message))

    async def drain(self) -> None:
        """Wait until queued jobs and scheduled retries are all done."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            if job is None:
                self._queue.task_done()
                break
            try:
                await self._process_job(job)
            except Exception:
                log.exception(
                    "voice.worker_unexpected_error user=%s message=%s", job.user_id, job.message.id
                )
            finally:
                self._queue.task_done()

    async def _process_job(self, job: VoiceNoteJob) -> None:
        final_attempt = job.attempts + 1 >= self._max_attempts
        try:
            outcome = await self._pipeline.process(job.user_id, job.message, final_attempt=final_attempt)
        except CollaboratorError as exc:
            self._handle_retryable(job, exc)
            return

        log.info(
            "voice.worker_done user=%s message=%s outcome=%s attempt=%d",
            job.user_id,
            job.message.id,
            outcome,
            job.attempts + 1,
        )

    def _handle_retryable(self, job: VoiceNoteJob, exc: CollaboratorError) -> None:
        delay = self._retry_base_delay * (2 ** job.attempts)
        log.warning(
            "voice.worker_retry user=%s message=%s attempt=%d delay=%.1fs error=%s",
            job.user_id,
            job.message.id,
            job.attempts + 1,
            delay,
            exc,
        )
        task = asyncio.create_task(self._schedule_retry(job.next_attempt(), delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _schedule_retry(self, job: VoiceNoteJob, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(job)
