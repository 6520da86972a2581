"""
Job Scheduler

Named in-process work queues with bounded concurrency and exponential
retry. Each queue is drained by a fixed pool of asyncio worker tasks.
A job that exhausts its attempts lands in a bounded dead-letter list;
the failure is logged and never reaches the code that enqueued it.
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional
from uuid import uuid4

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings
from app.core.exceptions import ConfigurationError
from app.core.logging import get_logger

logger = get_logger(__name__)

ORCHESTRATION_QUEUE = "orchestration"
SCORING_QUEUE = "scoring"

# handler(payload, attempt_number); attempt_number starts at 1
JobHandler = Callable[[Dict[str, Any], int], Awaitable[Any]]


@dataclass(frozen=True)
class QueuePolicy:
    name: str
    attempts: int
    backoff_ms: int
    concurrency: int


@dataclass
class Job:
    queue: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid4()))
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class DeadLetter(BaseModel):
    """A job that failed on every attempt."""
    job_id: str
    queue: str
    payload: Dict[str, Any]
    error: str
    attempts: int
    failed_at: datetime


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


def default_policies(settings: Settings) -> List[QueuePolicy]:
    return [
        QueuePolicy(
            name=ORCHESTRATION_QUEUE,
            attempts=settings.orchestration_attempts,
            backoff_ms=settings.orchestration_backoff_ms,
            concurrency=settings.orchestration_concurrency,
        ),
        QueuePolicy(
            name=SCORING_QUEUE,
            attempts=settings.scoring_attempts,
            backoff_ms=settings.scoring_backoff_ms,
            concurrency=settings.scoring_concurrency,
        ),
    ]


def _retry_logger(job: Job) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Job {job.id} on {job.queue} failed attempt {retry_state.attempt_number}: {error}; "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )
    return log


class JobScheduler:
    """Queues, worker pools and retry policy for background jobs."""

    def __init__(self, policies: Iterable[QueuePolicy], dead_letter_limit: int = 50):
        self._policies: Dict[str, QueuePolicy] = {p.name: p for p in policies}
        self._handlers: Dict[str, JobHandler] = {}
        self._queues: Dict[str, "asyncio.Queue[Job]"] = {}
        self._stats: Dict[str, QueueStats] = {name: QueueStats() for name in self._policies}
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_limit)
        self._workers: List[asyncio.Task] = []

    def register(self, queue: str, handler: JobHandler) -> None:
        if queue not in self._policies:
            raise ConfigurationError(f"No policy for queue: {queue}")
        self._handlers[queue] = handler

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Spawn the worker pool of every queue."""
        if self._workers:
            return
        for name, policy in self._policies.items():
            if name not in self._handlers:
                raise ConfigurationError(f"No handler registered for queue: {name}")
            queue = self._queues.setdefault(name, asyncio.Queue())
            for index in range(policy.concurrency):
                self._workers.append(asyncio.create_task(
                    self._worker(policy, queue), name=f"{name}-worker-{index}"
                ))
        logger.info(f"Job scheduler started with {len(self._workers)} workers")

    async def stop(self) -> None:
        """Cancel all workers. Jobs still waiting are dropped."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._queues.clear()
        if workers:
            logger.info("Job scheduler stopped")

    async def join(self) -> None:
        """Wait until every queue is drained and no job is running."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def enqueue(self, queue: str, payload: Dict[str, Any]) -> str:
        if queue not in self._policies:
            raise ConfigurationError(f"Unknown queue: {queue}")
        job = Job(queue=queue, payload=dict(payload))
        await self._queues.setdefault(queue, asyncio.Queue()).put(job)
        logger.debug(f"Enqueued job {job.id} on {queue}")
        return job.id

    def stats(self, queue: str) -> QueueStats:
        if queue not in self._policies:
            raise ConfigurationError(f"Unknown queue: {queue}")
        waiting = self._queues[queue].qsize() if queue in self._queues else 0
        return self._stats[queue].model_copy(update={"waiting": waiting})

    def dead_letters(self, queue: Optional[str] = None) -> List[DeadLetter]:
        return [d for d in self._dead_letters if queue is None or d.queue == queue]

    async def _worker(self, policy: QueuePolicy, queue: "asyncio.Queue[Job]") -> None:
        stats = self._stats[policy.name]
        while True:
            job = await queue.get()
            stats.active += 1
            try:
                await self._process(policy, job)
            finally:
                stats.active -= 1
                queue.task_done()

    async def _process(self, policy: QueuePolicy, job: Job) -> None:
        handler = self._handlers[policy.name]
        stats = self._stats[policy.name]
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.attempts),
                wait=wait_exponential(multiplier=policy.backoff_ms / 1000),
                retry=retry_if_exception_type(Exception),
                before_sleep=_retry_logger(job),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await handler(job.payload, attempts)
            stats.completed += 1
        except Exception as e:
            stats.failed += 1
            self._dead_letters.append(DeadLetter(
                job_id=job.id,
                queue=job.queue,
                payload=job.payload,
                error=str(e) or e.__class__.__name__,
                attempts=attempts,
                failed_at=datetime.now(timezone.utc),
            ))
            logger.error(f"Job {job.id} on {job.queue} failed after {attempts} attempts: {e}")
