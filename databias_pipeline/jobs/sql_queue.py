"""Durable job queue on the relational store.

Jobs live in the ``jobs`` table next to the analysis records. Claiming is a
conditional UPDATE on the row's state and availability, so two consumers (in
one process or many) never hold the same job; every later state change is
conditioned on the claimant's lock token.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from ..storage.database import session_scope
from ..storage.models import JobRecord
from .queue import READY_STATES, Job, JobOptions, JobQueue, JobState

_READY = [s.value for s in READY_STATES]
_CLAIM_RETRIES = 5


def _to_job(row: JobRecord) -> Job:
    return Job(
        id=row.id,
        queue_name=row.queue_name,
        data=dict(row.payload),
        max_attempts=row.max_attempts,
        backoff_delay=row.backoff_delay,
        state=JobState(row.state),
        attempts_made=row.attempts_made,
        available_at=row.available_at,
        created_at=row.created_at,
        lock_token=row.locked_by,
        locked_until=row.locked_until,
        last_error=row.last_error,
        finished_at=row.finished_at,
    )


class SqlJobQueue(JobQueue):
    def __init__(self, session_factory: sessionmaker, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    def _owned(self, job: Job):
        return (
            JobRecord.id == job.id,
            JobRecord.state == JobState.ACTIVE.value,
            JobRecord.locked_by == job.lock_token,
        )

    def _add(self, data: Dict[str, Any], options: JobOptions, now: float) -> Job:
        with self._scope() as session:
            row = JobRecord(
                queue_name=self.name,
                payload=data,
                state=JobState.WAITING.value,
                attempts_made=0,
                max_attempts=options.attempts,
                backoff_delay=options.backoff_delay,
                available_at=now,
                created_at=now,
            )
            session.add(row)
            session.flush()
            return _to_job(row)

    def _claim(self, lock_token: str, now: float) -> Optional[Job]:
        for _ in range(_CLAIM_RETRIES):
            with self._scope() as session:
                candidate = session.execute(
                    select(JobRecord.id)
                    .where(
                        JobRecord.queue_name == self.name,
                        JobRecord.state.in_(_READY),
                        JobRecord.available_at <= now,
                    )
                    .order_by(JobRecord.id)
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    return None
                claimed = session.execute(
                    update(JobRecord)
                    .where(
                        JobRecord.id == candidate,
                        JobRecord.state.in_(_READY),
                        JobRecord.available_at <= now,
                    )
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts_made=JobRecord.attempts_made + 1,
                        locked_by=lock_token,
                        locked_until=now + self.lock_duration,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed == 1:
                    row = session.execute(select(JobRecord).where(JobRecord.id == candidate)).scalar_one()
                    return _to_job(row)
            # Another consumer took the candidate first.
        return None

    def _conditional_update(self, conditions, **values) -> bool:
        with self._scope() as session:
            return session.execute(
                update(JobRecord)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount == 1

    def _complete(self, job: Job, now: float) -> bool:
        return self._conditional_update(
            self._owned(job),
            state=JobState.COMPLETED.value,
            finished_at=now,
            locked_by=None,
            locked_until=None,
        )

    def _schedule_retry(self, job: Job, available_at: float, error: str) -> bool:
        return self._conditional_update(
            self._owned(job),
            state=JobState.DELAYED.value,
            available_at=available_at,
            last_error=error,
            locked_by=None,
            locked_until=None,
        )

    def _fail(self, job: Job, now: float, error: str) -> bool:
        return self._conditional_update(
            self._owned(job),
            state=JobState.FAILED.value,
            finished_at=now,
            last_error=error,
            locked_by=None,
            locked_until=None,
        )

    def _expired_locks(self, now: float) -> List[Job]:
        with self._scope() as session:
            rows = session.execute(
                select(JobRecord)
                .where(
                    JobRecord.queue_name == self.name,
                    JobRecord.state == JobState.ACTIVE.value,
                    JobRecord.locked_until < now,
                )
                .order_by(JobRecord.id)
            ).scalars()
            return [_to_job(r) for r in rows]

    def _release_stalled(self, job: Job, now: float, requeue: bool, error: str) -> bool:
        conditions = self._owned(job) + (JobRecord.locked_until < now,)
        if requeue:
            return self._conditional_update(
                conditions,
                state=JobState.WAITING.value,
                available_at=now,
                last_error=error,
                locked_by=None,
                locked_until=None,
            )
        return self._conditional_update(
            conditions,
            state=JobState.FAILED.value,
            finished_at=now,
            last_error=error,
            locked_by=None,
            locked_until=None,
        )

    def _renew_lock(self, job: Job, locked_until: float) -> bool:
        return self._conditional_update(self._owned(job), locked_until=locked_until)

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._scope() as session:
            row = session.execute(
                select(JobRecord).where(JobRecord.id == job_id, JobRecord.queue_name == self.name)
            ).scalar_one_or_none()
            return _to_job(row) if row is not None else None

    def counts(self) -> Dict[str, int]:
        result = {state.value: 0 for state in JobState}
        with self._scope() as session:
            rows = session.execute(
                select(JobRecord.state, func.count())
                .where(JobRecord.queue_name == self.name)
                .group_by(JobRecord.state)
            ).all()
        for state, count in rows:
            result[state] = count
        return result
