"""
Pytest fixtures: in-memory SQLite store, temporary object store, a controllable
clock and an in-memory queue wired to the analysis processor.
"""
import pytest

from databias_pipeline.ingestion.object_store import LocalObjectStore
from databias_pipeline.jobs.processor import AnalysisProcessor
from databias_pipeline.jobs.queue import InMemoryJobQueue, JobOptions
from databias_pipeline.storage.database import init_db, make_engine, make_session_factory
from databias_pipeline.storage.repository import Storage

from sample_data import TENANT_ID, USER_ID


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def storage(session_factory):
    return Storage(session_factory)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "object-store"))


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(
        name="test-jobs",
        default_options=JobOptions(attempts=3, backoff_delay=5.0),
        lock_duration=300,
        clock=clock,
    )


@pytest.fixture
def processor(storage, queue, object_store):
    return AnalysisProcessor(storage, queue, object_store, results_bucket="results")


@pytest.fixture
def make_dataset(storage, object_store):
    """Store raw bytes in the object store and register a dataset pointing at them."""

    def _make(content: bytes, file_name: str, file_type: str, tenant_id: int = TENANT_ID):
        key = f"tenant_{tenant_id}/datasets/{file_name}"
        object_store.put_object("datasets", key, content)
        return storage.create_dataset(
            tenant_id=tenant_id,
            name=file_name,
            file_name=file_name,
            file_type=file_type,
            bucket="datasets",
            object_key=key,
            uploaded_by_id=USER_ID,
            file_size=len(content),
        )

    return _make


@pytest.fixture
def make_webhook_payload(storage):
    def _make(payload, tenant_id: int = TENANT_ID, analysis_type: str = "bias_analysis"):
        webhook = storage.create_webhook(
            tenant_id=tenant_id,
            name="crm",
            created_by_id=USER_ID,
            analysis_type=analysis_type,
        )
        return storage.store_webhook_payload(webhook.id, tenant_id, payload)

    return _make


@pytest.fixture
def client(processor):
    """FastAPI TestClient with the processor dependency pointed at the test fixtures."""
    from fastapi.testclient import TestClient

    from databias_pipeline.main import app, get_processor

    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()

