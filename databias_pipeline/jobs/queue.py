"""Job queue with attempts, exponential backoff and lifecycle events.

``JobQueue`` holds the delivery policy shared by every backend: claiming a job
takes an exclusive, time-limited lock; a handler exception consumes the
attempt and, if the error is retryable and attempts remain, schedules a retry
after ``backoff * 2 ** (attempts_made - 1)`` seconds. Non-retryable errors and
exhausted attempts fail the job permanently. A job whose lock expires while
active is stalled: it is re-queued if attempts remain, otherwise failed.

Backends implement the storage primitives. ``InMemoryJobQueue`` keeps jobs in
process and is meant for tests and local runs; ``SqlJobQueue`` (see
``sql_queue.py``) is the durable one.

Events (listener signature ``fn(job, **details)``):

- ``waiting``: job enqueued
- ``active``: job claimed by a consumer
- ``completed``: handler returned (``result``)
- ``failed``: job permanently failed (``error``)
- ``stalled``: lock expired while active (``requeued``)
- ``queue-error``: the backend itself failed (``error``); ``job`` may be None
"""
from __future__ import annotations

import itertools
import os
import socket
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..core.config import settings
from ..core.errors import TransientIOError, error_summary, is_retryable
from ..core.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]
Handler = Callable[["Job"], Any]
Listener = Callable[..., None]


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


READY_STATES = (JobState.WAITING, JobState.DELAYED)


class QueueEvent(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"
    ERROR = "queue-error"


@dataclass(frozen=True)
class JobOptions:
    attempts: int = field(default_factory=lambda: settings.JOB_ATTEMPTS)
    backoff_delay: float = field(default_factory=lambda: settings.JOB_BACKOFF_DELAY_SEC)

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff_delay < 0:
            raise ValueError("backoff_delay must not be negative")


@dataclass
class Job:
    id: int
    queue_name: str
    data: Dict[str, Any]
    max_attempts: int
    backoff_delay: float
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    available_at: float = 0.0
    created_at: float = 0.0
    lock_token: Optional[str] = None
    locked_until: Optional[float] = None
    last_error: Optional[str] = None
    finished_at: Optional[float] = None

    @property
    def is_final_attempt(self) -> bool:
        """True while running the last attempt the job is allowed."""
        return self.attempts_made >= self.max_attempts


def compute_backoff(base_delay: float, attempts_made: int) -> float:
    """Delay before the next attempt after `attempts_made` failed attempts."""
    return base_delay * (2 ** max(0, attempts_made - 1))


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class _LockRenewer:
    """Extends a claimed job's lock while its handler runs."""

    def __init__(self, queue: "JobQueue", job: Job):
        self._queue = queue
        self._job = job
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"lock-renew-{job.id}", daemon=True)

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, *exc_info):
        self._stop.set()
        self._thread.join()

    def _run(self):
        interval = max(0.5, self._queue.lock_duration / 2)
        while not self._stop.wait(interval):
            try:
                until = self._queue.clock() + self._queue.lock_duration
                if not self._queue._renew_lock(self._job, until):
                    logger.warning("job_lock_renewal_rejected", job_id=self._job.id)
                    return
                self._job.locked_until = until
            except Exception as e:
                self._queue._emit(QueueEvent.ERROR, self._job, error=e)


class JobQueue(ABC):
    """Delivery policy over an abstract job store."""

    def __init__(
        self,
        name: Optional[str] = None,
        default_options: Optional[JobOptions] = None,
        lock_duration: Optional[float] = None,
        clock: Clock = time.time,
    ):
        self.name = name or settings.QUEUE_NAME
        self.default_options = default_options or JobOptions()
        self.lock_duration = settings.JOB_LOCK_DURATION_SEC if lock_duration is None else lock_duration
        self.clock = clock
        self._handler: Optional[Handler] = None
        self._listeners: Dict[QueueEvent, List[Listener]] = {event: [] for event in QueueEvent}
        self._closed = False
        self._inflight = 0
        self._inflight_cond = threading.Condition()

    # --- Backend primitives ---

    @abstractmethod
    def _add(self, data: Dict[str, Any], options: JobOptions, now: float) -> Job: ...

    @abstractmethod
    def _claim(self, lock_token: str, now: float) -> Optional[Job]:
        """Atomically take the oldest ready job and lock it; increments attempts."""

    @abstractmethod
    def _complete(self, job: Job, now: float) -> bool: ...

    @abstractmethod
    def _schedule_retry(self, job: Job, available_at: float, error: str) -> bool: ...

    @abstractmethod
    def _fail(self, job: Job, now: float, error: str) -> bool: ...

    @abstractmethod
    def _expired_locks(self, now: float) -> List[Job]: ...

    @abstractmethod
    def _release_stalled(self, job: Job, now: float, requeue: bool, error: str) -> bool:
        """Requeue or fail an active job whose lock expired before `now`."""

    @abstractmethod
    def _renew_lock(self, job: Job, locked_until: float) -> bool: ...

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[Job]: ...

    @abstractmethod
    def counts(self) -> Dict[str, int]: ...

    # --- Public API ---

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, data: Dict[str, Any], options: Optional[JobOptions] = None) -> int:
        if self._closed:
            raise TransientIOError(f"Queue {self.name} is closed")
        try:
            job = self._add(data, options or self.default_options, self.clock())
        except Exception as e:
            self._emit(QueueEvent.ERROR, None, error=e)
            raise TransientIOError(f"Failed to enqueue job on {self.name}: {e}", cause=e) from e
        self._emit(QueueEvent.WAITING, job)
        return job.id

    def register_consumer(self, handler: Handler) -> None:
        self._handler = handler

    def on(self, event: QueueEvent, listener: Listener) -> None:
        self._listeners[QueueEvent(event)].append(listener)

    def process_next(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """Claim one ready job and run the consumer on it.

        Returns the job after its attempt finished, or None if nothing was
        ready (or the queue is closed).
        """
        if self._handler is None:
            raise RuntimeError(f"No consumer registered on queue {self.name}")

        token = f"{worker_id or default_worker_id()}:{uuid.uuid4().hex[:12]}"
        with self._inflight_cond:
            if self._closed:
                return None
            self._inflight += 1
        try:
            try:
                self.recover_stalled()
                job = self._claim(token, self.clock())
            except Exception as e:
                self._emit(QueueEvent.ERROR, None, error=e)
                return None
            if job is None:
                return None

            self._emit(QueueEvent.ACTIVE, job)
            try:
                with _LockRenewer(self, job):
                    result = self._handler(job)
            except Exception as e:
                self._handle_failure(job, e)
            else:
                if self._complete(job, self.clock()):
                    job.state = JobState.COMPLETED
                    self._emit(QueueEvent.COMPLETED, job, result=result)
                else:
                    self._emit(QueueEvent.ERROR, job, error=f"lock lost before completing job {job.id}")
            return job
        finally:
            with self._inflight_cond:
                self._inflight -= 1
                self._inflight_cond.notify_all()

    def recover_stalled(self) -> int:
        """Release jobs whose lock expired; returns how many were handled."""
        now = self.clock()
        released = 0
        for job in self._expired_locks(now):
            requeue = job.attempts_made < job.max_attempts
            error = f"stalled: lock expired during attempt {job.attempts_made}"
            if not self._release_stalled(job, now, requeue, error):
                continue
            released += 1
            self._emit(QueueEvent.STALLED, job, requeued=requeue)
            if not requeue:
                job.state = JobState.FAILED
                job.last_error = error
                self._emit(QueueEvent.FAILED, job, error=error)
        return released

    def close(self, timeout: Optional[float] = None) -> bool:
        """Stop handing out jobs and wait for in-flight attempts.

        Returns False if attempts were still running when `timeout` elapsed;
        their locks expire and the jobs are redelivered.
        """
        with self._inflight_cond:
            self._closed = True
            drained = self._inflight_cond.wait_for(lambda: self._inflight == 0, timeout=timeout)
        logger.info("queue_closed", queue=self.name, drained=drained)
        return drained

    # --- Internals ---

    def _handle_failure(self, job: Job, exc: Exception) -> None:
        summary = error_summary(exc)
        now = self.clock()
        if is_retryable(exc) and job.attempts_made < job.max_attempts:
            delay = compute_backoff(job.backoff_delay, job.attempts_made)
            if self._schedule_retry(job, now + delay, summary):
                job.state = JobState.DELAYED
                job.available_at = now + delay
                job.last_error = summary
                logger.warning(
                    "job_retry_scheduled",
                    queue=self.name,
                    job_id=job.id,
                    attempts_made=job.attempts_made,
                    max_attempts=job.max_attempts,
                    delay_sec=delay,
                    error=summary,
                )
            else:
                self._emit(QueueEvent.ERROR, job, error=f"lock lost before retrying job {job.id}")
            return
        if self._fail(job, now, summary):
            job.state = JobState.FAILED
            job.last_error = summary
            self._emit(QueueEvent.FAILED, job, error=exc)
        else:
            self._emit(QueueEvent.ERROR, job, error=f"lock lost before failing job {job.id}")

    def _emit(self, event: QueueEvent, job: Optional[Job], **details: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(job, **details)
            except Exception:
                logger.exception("queue_listener_failed", queue=self.name, queue_event=event.value)


def log_queue_events(queue: JobQueue) -> None:
    """Attach listeners that log every lifecycle event."""

    def _job_id(job: Optional[Job]) -> Optional[int]:
        return job.id if job is not None else None

    queue.on(QueueEvent.WAITING, lambda job, **d: logger.info("job_waiting", queue=queue.name, job_id=job.id))
    queue.on(
        QueueEvent.ACTIVE,
        lambda job, **d: logger.info("job_active", queue=queue.name, job_id=job.id, attempt=job.attempts_made),
    )
    queue.on(QueueEvent.COMPLETED, lambda job, **d: logger.info("job_completed", queue=queue.name, job_id=job.id))
    queue.on(
        QueueEvent.FAILED,
        lambda job, error=None, **d: logger.error(
            "job_failed", queue=queue.name, job_id=job.id, attempts_made=job.attempts_made, error=str(error)
        ),
    )
    queue.on(
        QueueEvent.STALLED,
        lambda job, requeued=False, **d: logger.warning(
            "job_stalled", queue=queue.name, job_id=job.id, requeued=requeued
        ),
    )
    queue.on(
        QueueEvent.ERROR,
        lambda job, error=None, **d: logger.error(
            "queue_error", queue=queue.name, job_id=_job_id(job), error=str(error)
        ),
    )


class InMemoryJobQueue(JobQueue):
    """Process-local backend with the same delivery policy as the durable queue."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._jobs: Dict[int, Job] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def _add(self, data: Dict[str, Any], options: JobOptions, now: float) -> Job:
        with self._lock:
            job = Job(
                id=next(self._ids),
                queue_name=self.name,
                data=dict(data),
                max_attempts=options.attempts,
                backoff_delay=options.backoff_delay,
                available_at=now,
                created_at=now,
            )
            self._jobs[job.id] = job
            return replace(job)

    def _claim(self, lock_token: str, now: float) -> Optional[Job]:
        with self._lock:
            ready = [j for j in self._jobs.values() if j.state in READY_STATES and j.available_at <= now]
            if not ready:
                return None
            job = min(ready, key=lambda j: j.id)
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            job.lock_token = lock_token
            job.locked_until = now + self.lock_duration
            return replace(job)

    def _owned(self, job: Job) -> Optional[Job]:
        stored = self._jobs.get(job.id)
        if stored is None or stored.state != JobState.ACTIVE or stored.lock_token != job.lock_token:
            return None
        return stored

    def _complete(self, job: Job, now: float) -> bool:
        with self._lock:
            stored = self._owned(job)
            if stored is None:
                return False
            stored.state = JobState.COMPLETED
            stored.finished_at = now
            stored.lock_token = stored.locked_until = None
            return True

    def _schedule_retry(self, job: Job, available_at: float, error: str) -> bool:
        with self._lock:
            stored = self._owned(job)
            if stored is None:
                return False
            stored.state = JobState.DELAYED
            stored.available_at = available_at
            stored.last_error = error
            stored.lock_token = stored.locked_until = None
            return True

    def _fail(self, job: Job, now: float, error: str) -> bool:
        with self._lock:
            stored = self._owned(job)
            if stored is None:
                return False
            stored.state = JobState.FAILED
            stored.finished_at = now
            stored.last_error = error
            stored.lock_token = stored.locked_until = None
            return True

    def _expired_locks(self, now: float) -> List[Job]:
        with self._lock:
            return [
                replace(j) for j in self._jobs.values()
                if j.state == JobState.ACTIVE and j.locked_until is not None and j.locked_until < now
            ]

    def _release_stalled(self, job: Job, now: float, requeue: bool, error: str) -> bool:
        with self._lock:
            stored = self._owned(job)
            if stored is None or stored.locked_until is None or stored.locked_until >= now:
                return False
            stored.lock_token = stored.locked_until = None
            stored.last_error = error
            if requeue:
                stored.state = JobState.WAITING
                stored.available_at = now
            else:
                stored.state = JobState.FAILED
                stored.finished_at = now
            return True

    def _renew_lock(self, job: Job, locked_until: float) -> bool:
        with self._lock:
            stored = self._owned(job)
            if stored is None:
                return False
            stored.locked_until = locked_until
            return True

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def counts(self) -> Dict[str, int]:
        with self._lock:
            result = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                result[job.state.value] += 1
            return result
