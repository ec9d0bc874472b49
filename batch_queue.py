"""
Batch queue scheduler.

Owns the FIFO job queue (max MAX_QUEUE_SIZE) and the ledger of finished jobs.
run() takes jobs from the head one at a time, runs the six steps through
JobRunner, records the job as completed or failed, and waits between jobs.
A failed job never stops the queue.

Observers subscribe with a callback that receives ProgressEvent and
StatusChange objects; a failing observer is logged and skipped.
"""
import asyncio
import itertools
import re
import time
from dataclasses import dataclass
from typing import Callable

from api_key_manager import ApiKeyPool
from batch_optimizer import ScheduleConfig, calculate_optimal_config
from config import MAX_QUEUE_SIZE, ConfigurationError
from job_runner import Job, JobFailedError, JobRunner, JobStatus, ProgressEvent
from llm_utils import GenerationError
from queue_persistence import PersistedQueueState, QueuePersistence
from script_steps import CancelToken, JobCancelledError, StageSettings, call_model


def _log(msg: str) -> None:
    print(f"[QUEUE] {msg}")


class QueueFullError(ValueError):
    """Enqueue would exceed the queue bound; nothing was added."""


@dataclass
class StatusChange:
    job_id: str
    old_status: JobStatus
    new_status: JobStatus


def split_batch_input(raw_text: str) -> list[str]:
    """One job per paragraph: blocks separated by blank lines, trimmed, empties dropped."""
    return [part.strip() for part in re.split(r"\n\s*\n", raw_text or "") if part.strip()]


class BatchScheduler:
    def __init__(
        self,
        prompts: dict[int, str],
        settings: StageSettings,
        api_key: str | None = None,
        key_pool: ApiKeyPool | None = None,
        schedule: ScheduleConfig | None = None,
        concurrency: int = 1,
        skip_discovery: bool = False,
        persistence: QueuePersistence | None = None,
        generate: Callable[[str, str, str, dict], str] = call_model,
        max_queue_size: int = MAX_QUEUE_SIZE,
    ):
        """
        Args:
            prompts: Resolved instruction text per step (1-6).
            api_key: Single credential; used when no key pool is given.
            key_pool: Pool of credentials; one key is taken per job.
            schedule: Fixed scheduling settings; computed from scene count and key
                capacity at run() time when None.
            concurrency: Jobs run at once, capped by schedule.parallel_jobs. 1 runs
                strictly one job at a time.
        """
        self.prompts = prompts
        self.settings = settings
        self.api_key = api_key
        self.key_pool = key_pool
        self.schedule = schedule
        self.concurrency = max(1, concurrency)
        self.skip_discovery = skip_discovery
        self.persistence = persistence
        self.generate = generate
        self.max_queue_size = max_queue_size

        self.queue: list[Job] = []
        self.ledger: list[Job] = []
        self.active: dict[str, Job] = {}
        self.is_running = False
        self.cancel_token = CancelToken()
        self._subscribers: list[Callable] = []
        self._id_seq = itertools.count()
        self._save_lock = asyncio.Lock()

    # ---- Observers ----

    def subscribe(self, callback: Callable[[ProgressEvent | StatusChange], None]) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: ProgressEvent | StatusChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                _log(f"WARNING: Observer {getattr(callback, '__name__', callback)} failed: {e}")

    def _set_status(self, job: Job, new_status: JobStatus) -> None:
        old_status = job.status
        job.status = new_status
        self._emit(StatusChange(job.id, old_status, new_status))

    # ---- Queue management ----

    def _new_job_id(self) -> str:
        return f"JOB_{int(time.time() * 1000)}_{next(self._id_seq)}"

    def _add_jobs(self, inputs: list[str]) -> list[Job]:
        if len(self.queue) + len(inputs) > self.max_queue_size:
            raise QueueFullError(
                f"Queue holds at most {self.max_queue_size} scripts "
                f"({len(self.queue)} queued, {len(inputs)} requested)"
            )
        jobs = [Job(id=self._new_job_id(), input=text) for text in inputs]
        self.queue.extend(jobs)
        self._save()
        return jobs

    def enqueue(self, raw_text: str) -> list[Job]:
        """
        Split raw_text on blank lines and append one pending job per block.

        Raises:
            QueueFullError: The queue would exceed max_queue_size; the queue is unchanged.
        """
        inputs = split_batch_input(raw_text)
        if not inputs:
            return []
        jobs = self._add_jobs(inputs)
        _log(f"Added {len(jobs)} job(s); {len(self.queue)} in queue")
        return jobs

    def retry_failed(self) -> list[Job]:
        """Queue a fresh copy of every failed ledger job. Ledger entries are kept."""
        inputs = [j.input for j in self.ledger if j.status == JobStatus.FAILED]
        if not inputs:
            return []
        jobs = self._add_jobs(inputs)
        _log(f"Re-queued {len(jobs)} failed job(s)")
        return jobs

    def clear_queue(self) -> None:
        self.queue = []
        self._save()

    def clear_ledger(self) -> None:
        self.ledger = []
        self._save()

    def cancel(self) -> None:
        """Stop at the next step/batch boundary. The current job fails as cancelled."""
        _log("Cancellation requested")
        self.cancel_token.cancel()

    # ---- Persistence ----

    def snapshot(self) -> PersistedQueueState:
        schedule = self.schedule_config()
        return PersistedQueueState(
            jobs=list(self.active.values()) + list(self.queue),
            processed_jobs=list(self.ledger),
            config={
                "scene_count": self.settings.scene_count,
                "word_min": self.settings.word_min,
                "word_max": self.settings.word_max,
                "delay_seconds": schedule.delay_between_jobs_ms / 1000,
            },
        )

    def restore(self, state: PersistedQueueState) -> None:
        """Replace queue and ledger with a saved state. In-flight jobs go back to pending."""
        if self.is_running:
            raise RuntimeError("Cannot restore while the queue is running")
        for job in state.jobs:
            job.status = JobStatus.PENDING
        # A snapshot may hold one more job than the bound (the in-flight one); keep them all
        self.queue = list(state.jobs)
        self.ledger = list(state.processed_jobs)
        _log(f"Restored {len(self.queue)} pending and {len(self.ledger)} processed job(s)")

    def _save(self) -> None:
        if not self.persistence:
            return
        try:
            self.persistence.save_state(self.snapshot())
        except OSError as e:
            _log(f"WARNING: Auto-save failed: {e}")

    async def _save_async(self) -> None:
        """Save from inside a run without blocking the event loop on the file write."""
        if not self.persistence:
            return
        async with self._save_lock:
            try:
                await self.persistence.save_state_async(self.snapshot())
            except OSError as e:
                _log(f"WARNING: Auto-save failed: {e}")

    # ---- Running ----

    def available_capacity(self) -> int:
        fallback = 1 if self.api_key else 0
        if self.key_pool is not None and self.key_pool.keys:
            # _next_credential falls back to api_key once the pool is exhausted
            return max(self.key_pool.available_count(), fallback)
        return fallback

    def schedule_config(self) -> ScheduleConfig:
        if self.schedule is not None:
            return self.schedule
        return calculate_optimal_config(self.settings.scene_count, max(1, self.available_capacity()))

    def _next_credential(self) -> str:
        if self.key_pool is not None and self.key_pool.keys:
            key = self.key_pool.next_key()
            if key:
                return key
            if not self.api_key:
                raise ConfigurationError("No usable API key left in the pool (all rate limited or dead)")
        if not self.api_key:
            raise ConfigurationError("Missing API key")
        return self.api_key

    def _report_key_result(self, api_key: str | None, error: Exception | None) -> None:
        if self.key_pool is None or not api_key:
            return
        if error is None:
            self.key_pool.mark_success(api_key)
            return
        cause = error.cause if isinstance(error, JobFailedError) else error
        if isinstance(cause, GenerationError) and cause.retryable:
            self.key_pool.mark_rate_limited(api_key)
        elif isinstance(cause, ConfigurationError) and "api key" in str(cause).lower():
            self.key_pool.mark_dead(api_key, str(cause))
        elif isinstance(cause, GenerationError):
            self.key_pool.mark_error(api_key, str(cause))

    async def run(self) -> list[Job]:
        """
        Drain the queue. Returns the jobs processed in this run, in dispatch order.

        Raises:
            ConfigurationError: No credential is configured.
        """
        if self.available_capacity() <= 0:
            raise ConfigurationError("Missing API key: set one or add keys to the pool")
        if not self.queue:
            _log("Queue is empty; nothing to run")
            return []
        if self.is_running:
            raise RuntimeError("Queue is already running")

        schedule = self.schedule_config()
        workers = min(self.concurrency, schedule.parallel_jobs)
        total = len(self.queue)
        dispatched = itertools.count(1)
        processed: list[Job] = []

        self.cancel_token = CancelToken()
        self.is_running = True
        _log(f"Running {total} job(s) with {workers} worker(s); batch={schedule.scenes_per_batch} scenes, "
             f"step delay={schedule.delay_between_batches_ms}ms, job delay={schedule.delay_between_jobs_ms}ms")
        try:
            await asyncio.gather(*(
                self._worker(schedule, total, dispatched, processed) for _ in range(workers)
            ))
        except asyncio.CancelledError:
            # Task cancelled from outside (Ctrl+C, task.cancel()), not through cancel()
            self._requeue_interrupted()
            raise
        finally:
            self.is_running = False
            self._emit(ProgressEvent(0, 0, "Queue finished"))

        completed = sum(1 for j in processed if j.status == JobStatus.COMPLETED)
        _log(f"Done: {completed} completed, {len(processed) - completed} failed, {len(self.queue)} still queued")
        return processed

    def _requeue_interrupted(self) -> None:
        """Put in-flight jobs back at the head of the queue, in dispatch order, checkpoints intact."""
        interrupted = list(self.active.values())
        self.active.clear()
        for job in interrupted:
            self._set_status(job, JobStatus.PENDING)
        self.queue[:0] = interrupted
        self._save()
        if interrupted:
            _log(f"Interrupted: {len(interrupted)} job(s) returned to the queue")

    async def _worker(self, schedule: ScheduleConfig, total: int, dispatched, processed: list[Job]) -> None:
        while self.queue and not self.cancel_token.cancelled:
            job = self.queue.pop(0)
            index = next(dispatched)
            await self._process(job, index, total, schedule)
            processed.append(job)
            if self.queue and not self.cancel_token.cancelled:
                self._emit(ProgressEvent(0, 0, f"Waiting {schedule.delay_between_jobs_ms}ms before next job..."))
                try:
                    await self.cancel_token.sleep(schedule.delay_between_jobs_ms)
                except JobCancelledError:
                    break

    async def _process(self, job: Job, index: int, total: int, schedule: ScheduleConfig) -> None:
        self.active[job.id] = job
        self._set_status(job, JobStatus.PROCESSING)
        api_key = None
        try:
            api_key = self._next_credential()
            runner = JobRunner(
                api_key,
                self.prompts,
                self.settings,
                schedule,
                generate=self.generate,
                emit=self._emit,
                cancel_token=self.cancel_token,
                skip_discovery=self.skip_discovery,
                on_checkpoint=lambda _job: self._save_async(),
            )
            await runner.run(job, index, total)
        except JobCancelledError:
            job.error = "cancelled"
            self._set_status(job, JobStatus.FAILED)
            _log(f"Job {index}/{total} cancelled")
        except JobFailedError as e:
            # Isolation: one job's failure is recorded and the queue moves on
            job.error = str(e.cause)
            job.failed_step = e.step
            self._report_key_result(api_key, e)
            self._set_status(job, JobStatus.FAILED)
            _log(f"Job {index}/{total} FAILED: {e}")
        except Exception as e:
            job.error = str(e)
            self._report_key_result(api_key, e)
            self._set_status(job, JobStatus.FAILED)
            _log(f"Job {index}/{total} FAILED: {e}")
        else:
            job.error = None
            job.failed_step = None
            self._report_key_result(api_key, None)
            self._set_status(job, JobStatus.COMPLETED)
            _log(f"Job {index}/{total} completed ({len(job.outputs)} step outputs)")

        # Only terminal jobs reach the ledger; an interrupted job stays in active for run() to requeue
        self.active.pop(job.id, None)
        self.ledger.append(job)
        await self._save_async()
