"""Tests for the durable SQL-backed queue."""
from databias_pipeline.core.errors import TransientIOError
from databias_pipeline.jobs.queue import JobOptions, JobState, QueueEvent
from databias_pipeline.jobs.sql_queue import SqlJobQueue


def _queue(session_factory, clock, **kwargs):
    kwargs.setdefault("default_options", JobOptions(attempts=3, backoff_delay=5.0))
    return SqlJobQueue(session_factory, name=kwargs.pop("name", "analysis-jobs"), clock=clock, **kwargs)


def test_enqueue_process_complete(session_factory, clock):
    queue = _queue(session_factory, clock)
    seen = []
    queue.register_consumer(lambda job: seen.append(job.data))

    job_id = queue.enqueue({"analysis_id": 7, "tenant_id": 1})
    assert queue.get_job(job_id).state == JobState.WAITING
    queue.process_next()

    job = queue.get_job(job_id)
    assert seen == [{"analysis_id": 7, "tenant_id": 1}]
    assert job.state == JobState.COMPLETED
    assert job.attempts_made == 1
    assert job.lock_token is None
    assert queue.counts()["completed"] == 1


def test_jobs_survive_a_new_queue_instance(session_factory, clock):
    producer = _queue(session_factory, clock)
    job_id = producer.enqueue({"analysis_id": 1})
    producer.close()

    consumer = _queue(session_factory, clock)
    consumer.register_consumer(lambda job: None)
    assert consumer.process_next().id == job_id


def test_retry_backoff_and_permanent_failure(session_factory, clock):
    queue = _queue(session_factory, clock)
    failed = []
    queue.on(QueueEvent.FAILED, lambda job, **d: failed.append(job.id))

    def handler(job):
        raise TransientIOError("bucket unavailable")

    queue.register_consumer(handler)
    job_id = queue.enqueue({})

    delays = []
    for _ in range(2):
        queue.process_next()
        job = queue.get_job(job_id)
        assert job.state == JobState.DELAYED
        delays.append(job.available_at - clock.now)
        clock.advance(delays[-1])
    queue.process_next()

    job = queue.get_job(job_id)
    assert delays == [5.0, 10.0]
    assert job.state == JobState.FAILED
    assert job.attempts_made == 3
    assert job.last_error.startswith("transient_io")
    assert failed == [job_id]


def test_single_owner_per_attempt(session_factory, clock):
    first = _queue(session_factory, clock)
    second = _queue(session_factory, clock)
    second.register_consumer(lambda job: None)
    competing = []

    def handler(job):
        competing.append(second.process_next("other"))

    first.register_consumer(handler)
    first.enqueue({})
    first.process_next("owner")
    assert competing == [None]


def test_stalled_job_requeued(session_factory, clock):
    queue = _queue(session_factory, clock, lock_duration=10)
    stalled = []
    queue.on(QueueEvent.STALLED, lambda job, requeued=False, **d: stalled.append(requeued))

    def stalls(job):
        clock.advance(11)
        queue.recover_stalled()

    queue.register_consumer(stalls)
    job_id = queue.enqueue({})
    queue.process_next()
    assert stalled == [True]
    assert queue.get_job(job_id).state == JobState.WAITING

    queue.register_consumer(lambda job: None)
    queue.process_next()
    assert queue.get_job(job_id).state == JobState.COMPLETED
    assert queue.get_job(job_id).attempts_made == 2


def test_queue_names_are_isolated(session_factory, clock):
    other = _queue(session_factory, clock, name="other-jobs")
    other.enqueue({})
    queue = _queue(session_factory, clock)
    queue.register_consumer(lambda job: None)
    assert queue.process_next() is None
