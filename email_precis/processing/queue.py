"""
In-memory processing queue for email classification.

Jobs move Pending -> Fetching -> Classifying -> Succeeded, or to Failed or
QuotaWait from either in-flight state. QuotaWait jobs return to Pending on
the first scheduling tick after ``next_eligible_at``, and no job is
dispatched before then. Finished jobs are kept for ``job_retention`` seconds.
All job-table writes happen under one asyncio lock; readers get copies.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from email_precis.config import CFG
from email_precis.errors import (
    MissingCredentialError,
    PrecisError,
    RateLimitError,
    TransientProviderError,
)
from email_precis.models.queue import JobState, QueueJob, QueueStats, QuotaNotice
from email_precis.utils.logger import get_logger

logger = get_logger("queue")

Clock = Callable[[], datetime]
Advance = Callable[[JobState], Awaitable[None]]
Runner = Callable[[QueueJob, Advance], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff(base: float, maximum: float, exponent: int) -> timedelta:
    """``base * 2**exponent`` seconds, capped at ``maximum``."""
    return timedelta(seconds=min(base * (2 ** max(exponent, 0)), maximum))


class EnqueueOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class ProcessingQueue:
    """
    Deduplicating job queue with a global concurrency cap and quota backoff.

    ``runner`` does the actual work for one job. It receives a copy of the
    job and an ``advance`` callback to report Fetching -> Classifying, and
    signals failure by raising taxonomy errors.
    """

    def __init__(
        self,
        runner: Runner,
        clock: Clock = utc_now,
        max_concurrency: int = CFG.max_concurrency,
        max_attempts: int = CFG.max_attempts,
        base_retry_delay: float = CFG.base_retry_delay,
        max_retry_delay: float = CFG.max_retry_delay,
        quota_base_delay: float = CFG.quota_base_delay,
        quota_max_delay: float = CFG.quota_max_delay,
        max_queue_size: int = CFG.max_queue_size,
        job_timeout: float = CFG.job_timeout,
        job_retention: float = CFG.job_retention,
        tick_interval: float = CFG.tick_interval,
        stats_interval: float = CFG.stats_interval,
        help_url: Optional[str] = CFG.quota_help_url,
    ):
        self._runner = runner
        self._clock = clock
        self.max_concurrency = max_concurrency
        self.max_attempts = max_attempts
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self.quota_base_delay = quota_base_delay
        self.quota_max_delay = quota_max_delay
        self.max_queue_size = max_queue_size
        self.job_timeout = job_timeout
        self.job_retention = job_retention
        self.tick_interval = tick_interval
        self.stats_interval = stats_interval
        self.help_url = help_url

        self._jobs: Dict[Tuple[str, str], QueueJob] = {}
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._quota: Optional[QuotaNotice] = None
        self._hold_until: Optional[datetime] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = False

    ###############
    ### Readers ###
    ###############

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def is_active(self) -> bool:
        return any(not job.state.is_terminal for job in self._jobs.values())

    @property
    def quota_notice(self) -> Optional[QuotaNotice]:
        return self._quota

    def stats(self) -> QueueStats:
        """Snapshot of the job table as of the last completed transition."""
        by_state = {state: 0 for state in JobState}
        for job in self._jobs.values():
            by_state[job.state] += 1
        return QueueStats(
            total=len(self._jobs),
            by_state=by_state,
            is_active=self.is_active,
            timestamp=self._clock(),
        )

    def get_job(self, user_id: str, email_id: str) -> Optional[QueueJob]:
        job = self._jobs.get((user_id, email_id))
        return job.model_copy(deep=True) if job else None

    def jobs(self) -> List[QueueJob]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    ###############
    ### Writers ###
    ###############

    async def enqueue(self, user_id: str, email_id: str) -> EnqueueOutcome:
        """
        Idempotent per (user, email): a non-terminal job for the key makes
        this a no-op. A terminal job for the key is replaced.
        """
        key = (user_id, email_id)
        async with self._lock:
            existing = self._jobs.get(key)
            if existing is not None and not existing.state.is_terminal:
                logger.debug(f"Job {key} already queued in state {existing.state.value}")
                return EnqueueOutcome.DUPLICATE

            if self._stopping:
                logger.warning(f"Queue is shutting down, rejected {key}")
                return EnqueueOutcome.REJECTED

            active = sum(1 for job in self._jobs.values() if not job.state.is_terminal)
            if active >= self.max_queue_size:
                logger.warning(f"Queue is full ({active} active jobs), rejected {key}")
                return EnqueueOutcome.REJECTED

            if existing is not None:
                # Preserve insertion order for FIFO dispatch
                del self._jobs[key]
            self._jobs[key] = QueueJob(email_id=email_id, user_id=user_id, enqueued_at=self._clock())

        logger.info(f"Enqueued email {email_id} for user {user_id}")
        self._wakeup.set()
        return EnqueueOutcome.ACCEPTED

    async def enqueue_many(self, user_id: str, email_ids: Iterable[str]) -> Dict[str, List[str]]:
        outcome = {o.value: [] for o in EnqueueOutcome}
        for email_id in dict.fromkeys(email_ids):
            result = await self.enqueue(user_id, email_id)
            outcome[result.value].append(email_id)
        return outcome

    async def clear(self) -> int:
        """Drops terminal jobs. Returns how many were removed."""
        async with self._lock:
            done = [key for key, job in self._jobs.items() if job.state.is_terminal]
            for key in done:
                del self._jobs[key]
        logger.info(f"Cleared {len(done)} finished job(s)")
        return len(done)

    ##################
    ### Scheduling ###
    ##################

    def _promote_due(self, now: datetime) -> None:
        for job in self._jobs.values():
            if job.state is JobState.QUOTA_WAIT and job.next_eligible_at <= now:
                job.state = JobState.PENDING
                job.next_eligible_at = None
                job.quota = None
                logger.info(f"Quota wait over for email {job.email_id}, back to Pending")

        if self._quota is not None and not any(
            job.state is JobState.QUOTA_WAIT for job in self._jobs.values()
        ):
            self._quota = None

    def _evict_finished(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.job_retention)
        expired = [
            key
            for key, job in self._jobs.items()
            if job.state.is_terminal and job.finished_at is not None and job.finished_at <= cutoff
        ]
        for key in expired:
            del self._jobs[key]
        if expired:
            logger.info(f"Evicted {len(expired)} finished job(s)")

    async def tick(self) -> List[asyncio.Task]:
        """
        One scheduling pass: evicts finished jobs past their retention,
        promotes due QuotaWait jobs, then starts eligible Pending jobs while
        in-flight work is below the cap. Nothing starts while a provider
        quota stall is in effect.
        Returns the tasks started by this pass.
        """
        started = []
        async with self._lock:
            now = self._clock()
            self._evict_finished(now)
            self._promote_due(now)

            if self._stopping:
                return started

            if self._hold_until is not None:
                if now < self._hold_until:
                    return started
                self._hold_until = None
                logger.info("Quota hold lifted, resuming dispatch")

            for key, job in self._jobs.items():
                if len(self._tasks) >= self.max_concurrency:
                    break
                if job.state is not JobState.PENDING or key in self._tasks:
                    continue
                if job.next_eligible_at is not None and job.next_eligible_at > now:
                    continue

                job.state = JobState.FETCHING
                job.attempts += 1
                job.next_eligible_at = None
                task = asyncio.create_task(self._run_job(key, job.model_copy(deep=True)))
                self._tasks[key] = task
                started.append(task)
                logger.info(f"Dispatched email {job.email_id} (attempt {job.attempts})")

        return started

    async def _advance(self, key: Tuple[str, str], state: JobState) -> None:
        async with self._lock:
            job = self._jobs.get(key)
            if job is not None and job.state.is_in_flight:
                job.state = state

    async def _run_job(self, key: Tuple[str, str], snapshot: QueueJob) -> None:
        async def advance(state: JobState) -> None:
            await self._advance(key, state)

        try:
            await asyncio.wait_for(self._runner(snapshot, advance), timeout=self.job_timeout)
        except RateLimitError as e:
            await self._quota_wait(key, e)
        except MissingCredentialError as e:
            await self._fail(key, e, needs_reauth=True)
        except TransientProviderError as e:
            await self._retry_or_fail(key, e)
        except asyncio.TimeoutError:
            await self._retry_or_fail(key, TransientProviderError(f"Job timed out after {self.job_timeout}s"))
        except PrecisError as e:
            await self._fail(key, e)
        except Exception as e:
            logger.exception(f"Unexpected error processing email {key[1]}")
            await self._fail(key, e)
        else:
            await self._succeed(key)
        finally:
            self._tasks.pop(key, None)
            self._wakeup.set()

    async def _succeed(self, key: Tuple[str, str]) -> None:
        async with self._lock:
            job = self._jobs[key]
            job.state = JobState.SUCCEEDED
            job.finished_at = self._clock()
            job.last_error = None
            job.quota = None
        logger.info(f"Email {key[1]} processed")

    async def _fail(self, key: Tuple[str, str], error: Exception, needs_reauth: bool = False) -> None:
        async with self._lock:
            job = self._jobs[key]
            job.state = JobState.FAILED
            job.finished_at = self._clock()
            job.last_error = f"{type(error).__name__}: {error}"
            job.needs_reauth = needs_reauth
        logger.error(f"Email {key[1]} failed: {job.last_error}")

    async def _retry_or_fail(self, key: Tuple[str, str], error: TransientProviderError) -> None:
        async with self._lock:
            job = self._jobs[key]
            if job.retry_attempts >= self.max_attempts:
                give_up = True
            else:
                give_up = False
                delay = backoff(self.base_retry_delay, self.max_retry_delay, job.retry_attempts - 1)
                job.state = JobState.PENDING
                job.next_eligible_at = self._clock() + delay
                job.last_error = f"{type(error).__name__}: {error}"

        if give_up:
            await self._fail(key, error)
        else:
            logger.warning(
                f"Transient failure for email {key[1]} ({error}), retrying in {delay.total_seconds():.0f}s"
            )

    async def _quota_wait(self, key: Tuple[str, str], error: RateLimitError) -> None:
        async with self._lock:
            job = self._jobs[key]
            job.quota_hits += 1
            retry_after = error.retry_after or backoff(
                self.quota_base_delay, self.quota_max_delay, job.quota_hits - 1
            )
            notice = QuotaNotice(
                message=(
                    "Rate limit reached. Processing will resume in about "
                    f"{int(retry_after.total_seconds())} seconds."
                ),
                retry_after=retry_after,
                quota_limit=error.quota_limit,
                help_url=self.help_url,
            )
            job.state = JobState.QUOTA_WAIT
            job.next_eligible_at = self._clock() + retry_after
            job.last_error = f"{type(error).__name__}: {error}"
            job.quota = notice
            self._quota = notice
            # No dispatch until the longest stall ends
            if self._hold_until is None or job.next_eligible_at > self._hold_until:
                self._hold_until = job.next_eligible_at

        logger.warning(
            f"Quota exhausted for email {key[1]}, waiting until {job.next_eligible_at.isoformat()}"
        )

    #################
    ### Lifecycle ###
    #################

    async def run(self) -> None:
        """Dispatcher loop. Wakes on enqueue, job completion or every ``tick_interval``."""
        last_stats = self._clock()
        while not self._stopping:
            self._wakeup.clear()
            try:
                await self.tick()
            except Exception:
                logger.exception("Queue tick failed")

            now = self._clock()
            if (now - last_stats).total_seconds() >= self.stats_interval:
                stats = self.stats()
                logger.info(
                    f"Queue stats: total={stats.total} "
                    + " ".join(f"{s.value}={n}" for s, n in stats.by_state.items())
                )
                last_stats = now

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._stopping = False
            self._loop_task = asyncio.create_task(self.run())
            logger.info("Processing queue started")

    async def shutdown(self) -> None:
        """
        Stops dispatching, waits for in-flight jobs to settle, then discards
        the in-memory job table.
        """
        self._stopping = True
        self._wakeup.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        pending = list(self._tasks.values())
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight job(s)...")
            await asyncio.gather(*pending, return_exceptions=True)

        async with self._lock:
            self._jobs.clear()
            self._quota = None
            self._hold_until = None
        logger.info("Processing queue stopped")
