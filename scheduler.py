# ABOUTME: Runs one synthesis call per chunk in quota-sized concurrent batches with staggered starts
# ABOUTME: Retries rate-limited chunks with exponential backoff, paces batches per minute, enforces a failure ceiling
from __future__ import annotations

import asyncio
import enum
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from chunker import Chunk
from settings import (
    FAILURE_RATIO_CEILING,
    INITIAL_RETRY_DELAY_MS,
    MAX_CONCURRENT,
    MAX_REQUESTS_PER_MINUTE,
    MAX_RETRIES,
)
from tts_client import SynthesisClient, SynthesisError

logger = logging.getLogger("longform-tts.scheduler")

WINDOW_SECS = 60.0
STAGGER_SAFETY_MARGIN = 1.1
MAX_ERROR_SAMPLES = 5
EMPTY = b""  # Result slot of a chunk that failed within tolerance


class JobState(enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchPlan:
    max_concurrent: int = MAX_CONCURRENT
    max_requests_per_minute: int = MAX_REQUESTS_PER_MINUTE
    initial_retry_delay: float = INITIAL_RETRY_DELAY_MS / 1000  # seconds
    max_retries: int = MAX_RETRIES
    failure_ratio_ceiling: float = FAILURE_RATIO_CEILING

    def __post_init__(self):
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.max_requests_per_minute < 1:
            raise ValueError(f"max_requests_per_minute must be >= 1, got {self.max_requests_per_minute}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_retry_delay < 0:
            raise ValueError(f"initial_retry_delay must be >= 0, got {self.initial_retry_delay}")
        if not 0.0 <= self.failure_ratio_ceiling <= 1.0:
            raise ValueError(f"failure_ratio_ceiling must be within [0, 1], got {self.failure_ratio_ceiling}")

    @classmethod
    def from_settings(cls, settings) -> BatchPlan:
        return cls(
            max_concurrent=settings.max_concurrent,
            max_requests_per_minute=settings.max_requests_per_minute,
            initial_retry_delay=settings.initial_retry_delay_ms / 1000,
            max_retries=settings.max_retries,
            failure_ratio_ceiling=settings.failure_ratio_ceiling,
        )

    @property
    def batch_size(self) -> int:
        return min(self.max_concurrent, self.max_requests_per_minute)

    @property
    def stagger_secs(self) -> float:
        """Per-slot start offset: one request interval plus a 10% margin."""
        return WINDOW_SECS / self.max_requests_per_minute * STAGGER_SAFETY_MARGIN

    def backoff_secs(self, attempt: int) -> float:
        """Delay before retrying after `attempt` prior failures (0-based)."""
        return self.initial_retry_delay * (2 ** attempt)


@dataclass
class SynthesisJob:
    index: int
    text: str
    attempts: int = 0
    state: JobState = JobState.PENDING
    audio: bytes | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProgressUpdate:
    processed: int
    total: int
    failed: int
    message: str
    estimated_remaining_minutes: int


class ProgressObserver(Protocol):
    async def on_progress(self, update: ProgressUpdate) -> None: ...


class LoggingProgress:
    """Progress observer that writes each update to the log."""

    async def on_progress(self, update: ProgressUpdate) -> None:
        logger.info("Progress %d/%d (%d failed, ~%d min left): %s",
                    update.processed, update.total, update.failed,
                    update.estimated_remaining_minutes, update.message)


class BatchFailureThresholdExceeded(RuntimeError):
    def __init__(self, failed_count: int, total_count: int, samples: list[str]):
        self.failed_count = failed_count
        self.total_count = total_count
        self.samples = samples
        detail = "; ".join(samples)
        super().__init__(
            f"Too many chunks failed: {failed_count}/{total_count}. Errors: {detail}"
        )


@dataclass
class BatchResult:
    results: list[bytes]   # One slot per chunk, in chunk order
    failed_count: int
    errors: list[str] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.results)


class BatchScheduler:
    """Drives SynthesisClient over an ordered chunk list within concurrency and per-minute limits."""

    def __init__(
        self,
        client: SynthesisClient,
        plan: BatchPlan | None = None,
        observer: ProgressObserver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.plan = plan or BatchPlan()
        self.observer = observer
        self._sleep = sleep
        self._clock = clock

    async def _report(self, processed: int, total: int, failed: int, message: str):
        if self.observer is None:
            return
        remaining = max(total - processed, 0)
        eta = math.ceil(remaining / self.plan.max_requests_per_minute)
        await self.observer.on_progress(ProgressUpdate(
            processed=processed,
            total=total,
            failed=failed,
            message=message,
            estimated_remaining_minutes=eta,
        ))

    async def _run_job(self, job: SynthesisJob, start_delay: float) -> None:
        """Take one job to a terminal state. Never raises SynthesisError."""
        if start_delay > 0:
            await self._sleep(start_delay)

        while True:
            job.state = JobState.IN_FLIGHT
            job.attempts += 1
            try:
                job.audio = await self.client.synthesize(job.text)
                job.state = JobState.SUCCEEDED
                return
            except SynthesisError as e:
                failures = job.attempts - 1
                if e.retryable and failures < self.plan.max_retries:
                    wait = self.plan.backoff_secs(failures)
                    logger.warning("Chunk %d rate limited (attempt %d/%d), retrying in %.1fs: %s",
                                   job.index, job.attempts, self.plan.max_retries + 1, wait, e)
                    job.state = JobState.PENDING
                    await self._sleep(wait)
                    continue
                job.state = JobState.FAILED
                job.error = f"Chunk {job.index}: {e}"
                logger.error("Chunk %d failed after %d attempt(s): %s", job.index, job.attempts, e)
                return

    async def run(self, chunks: list[Chunk]) -> BatchResult:
        """Synthesize every chunk. Raises BatchFailureThresholdExceeded over the failure ceiling."""
        total = len(chunks)
        results: list[bytes] = [EMPTY] * total
        if total == 0:
            return BatchResult(results=results, failed_count=0)

        plan = self.plan
        batch_size = plan.batch_size
        stagger = plan.stagger_secs
        total_batches = math.ceil(total / batch_size)

        processed = 0
        failed = 0
        errors: list[str] = []
        window_start = self._clock()
        window_requests = 0

        logger.info("Synthesizing %d chunks in %d batches of %d (stagger %.2fs)",
                    total, total_batches, batch_size, stagger)
        await self._report(0, total, 0, f"Starting synthesis of {total} chunks")

        for batch_num, start in enumerate(range(0, total, batch_size), 1):
            if self._clock() - window_start >= WINDOW_SECS:
                window_start = self._clock()
                window_requests = 0

            batch = [SynthesisJob(index=c.index, text=c.text) for c in chunks[start:start + batch_size]]
            await asyncio.gather(*(
                self._run_job(job, slot * stagger) for slot, job in enumerate(batch)
            ))

            for job, position in zip(batch, range(start, start + len(batch))):
                window_requests += job.attempts
                if job.state is JobState.SUCCEEDED:
                    results[position] = job.audio
                else:
                    failed += 1
                    errors.append(job.error or f"Chunk {job.index}: unknown error")
            processed += len(batch)

            await self._report(processed, total, failed,
                               f"Batch {batch_num}/{total_batches} complete")

            if processed < total and window_requests >= plan.max_requests_per_minute:
                if batch_size >= plan.max_requests_per_minute:
                    wait = WINDOW_SECS
                else:
                    wait = max(WINDOW_SECS - (self._clock() - window_start), 0.0)
                if wait > 0:
                    logger.info("Request quota reached (%d in window), cooling down %.1fs",
                                window_requests, wait)
                    await self._report(processed, total, failed,
                                       f"Rate limit cooldown: waiting {math.ceil(wait)}s")
                    await self._sleep(wait)
                window_start = self._clock()
                window_requests = 0

        ratio = failed / total
        if ratio > plan.failure_ratio_ceiling:
            samples = errors[:MAX_ERROR_SAMPLES]
            logger.error("%d/%d chunks failed (%.0f%% > %.0f%% ceiling)",
                         failed, total, ratio * 100, plan.failure_ratio_ceiling * 100)
            raise BatchFailureThresholdExceeded(failed, total, samples)

        if failed:
            logger.warning("%d/%d chunks failed; within %.0f%% tolerance",
                           failed, total, plan.failure_ratio_ceiling * 100)
        return BatchResult(results=results, failed_count=failed, errors=errors)
