"""Queue worker: claims jobs, runs a processor and reports the outcome."""

from __future__ import annotations

import asyncio
import inspect
import logging
import traceback
import uuid
from typing import Any, Awaitable, Callable, Optional, Set

from .queue.base import BaseQueueBackend
from .queue.models import JobState, QueueJob

logger = logging.getLogger(__name__)

Processor = Callable[[QueueJob], Awaitable[Any]]
CompletedHook = Callable[[QueueJob, Any], Any]
FailedHook = Callable[[QueueJob, str, bool], Any]


async def _call_hook(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    try:
        result = hook(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Worker event hook raised")


class Worker:
    """Process jobs from one queue with bounded concurrency.

    Each claimed job runs ``processor(job)`` under the job's ``timeout_ms``
    while a background task renews the job lock at half its duration. A
    processor that returns completes the job; one that raises fails it, with
    the exception's ``retryable`` attribute (default ``True``) deciding
    whether the backend may schedule another attempt.
    """

    def __init__(
        self,
        queue_name: str,
        processor: Processor,
        backend: BaseQueueBackend,
        concurrency: int = 5,
        lock_duration_ms: int = 30000,
        max_stalled_count: int = 2,
        poll_interval: float = 0.1,
        worker_id: Optional[str] = None,
        on_completed: Optional[CompletedHook] = None,
        on_failed: Optional[FailedHook] = None,
    ) -> None:
        self.queue_name = queue_name
        self.worker_id = worker_id or f"{queue_name}-{uuid.uuid4().hex[:8]}"
        self._processor = processor
        self._backend = backend
        self.concurrency = max(1, concurrency)
        self.lock_duration_ms = lock_duration_ms
        self.max_stalled_count = max_stalled_count
        self.poll_interval = poll_interval
        self.on_completed = on_completed
        self.on_failed = on_failed
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._slots: Optional[asyncio.Semaphore] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll the queue until ``close`` is called or ``lifespan`` seconds pass."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        next_stall_check = start_time
        self._running = True
        self._slots = asyncio.Semaphore(self.concurrency)
        logger.info(
            f"Worker {self.worker_id} started on {self.queue_name} "
            f"(concurrency={self.concurrency})"
        )

        try:
            while self._running:
                now = loop.time()
                if lifespan and now - start_time >= lifespan:
                    break
                if now >= next_stall_check:
                    await self.check_stalled()
                    next_stall_check = now + self.lock_duration_ms / 1000

                await self._slots.acquire()
                try:
                    job = await self._backend.claim(
                        self.queue_name, self.worker_id, self.lock_duration_ms
                    )
                except Exception:
                    self._slots.release()
                    logger.exception(f"Worker {self.worker_id} failed to claim a job")
                    await asyncio.sleep(self.poll_interval)
                    continue

                if job is None:
                    self._slots.release()
                    await asyncio.sleep(self.poll_interval)
                    continue

                task = asyncio.create_task(self._run_with_slot(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            self._running = False
            await self._drain()
            logger.info(f"Worker {self.worker_id} stopped")

    async def close(self) -> None:
        """Stop claiming new jobs and wait for running ones to finish."""
        self._running = False
        await self._drain()

    async def _drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_next(self) -> Optional[QueueJob]:
        """Claim and process a single job, returning it or ``None`` if idle."""
        job = await self._backend.claim(self.queue_name, self.worker_id, self.lock_duration_ms)
        if job is None:
            return None
        await self.process(job)
        return job

    async def check_stalled(self) -> None:
        try:
            stalled = await self._backend.recover_stalled(self.queue_name, self.max_stalled_count)
        except Exception:
            logger.exception(f"Stalled-job check failed on {self.queue_name}")
            return
        for entry in stalled:
            if entry.final:
                await _call_hook(
                    self.on_failed, entry.job, entry.job.failed_reason or "stalled", True
                )

    async def _run_with_slot(self, job: QueueJob) -> None:
        try:
            await self.process(job)
        finally:
            if self._slots is not None:
                self._slots.release()

    async def process(self, job: QueueJob) -> None:
        """Run the processor for a claimed job and settle it with the backend."""
        logger.info(f"Processing job {job.id} ({job.name}) attempt {job.attempts_made + 1}")
        renewer = asyncio.create_task(self._renew_lock(job))
        timeout = job.opts.timeout_ms / 1000 if job.opts.timeout_ms else None
        try:
            result = await asyncio.wait_for(self._processor(job), timeout)
        except asyncio.TimeoutError:
            await self._fail(job, f"Job timed out after {job.opts.timeout_ms} ms", None, True)
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            logger.error(f"Job {job.id} failed: {e}")
            await self._fail(job, str(e), traceback.format_exc(), retryable)
        else:
            if await self._backend.complete(job, result):
                logger.info(f"Job {job.id} completed")
                await _call_hook(self.on_completed, job, result)
            else:
                logger.warning(f"Job {job.id} finished after its lock was lost")
        finally:
            renewer.cancel()

    async def _fail(
        self, job: QueueJob, error: str, stack: Optional[str], retryable: bool
    ) -> None:
        updated = await self._backend.fail(job, error, stack, retryable)
        if updated is None:
            logger.warning(f"Job {job.id} failed after its lock was lost")
            return
        final = updated.state == JobState.FAILED
        if final:
            logger.error(f"Job {job.id} failed permanently: {error}")
        else:
            logger.info(f"Job {job.id} will retry ({updated.attempts_left} attempts left)")
        await _call_hook(self.on_failed, updated, error, final)

    async def _renew_lock(self, job: QueueJob) -> None:
        interval = self.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self._backend.extend_lock(job, self.lock_duration_ms)
            except Exception:
                logger.exception(f"Failed to extend lock on job {job.id}")
                continue
            if not extended:
                logger.warning(f"Lost lock on job {job.id}")
                return
