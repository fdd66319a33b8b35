"""End-to-end tests for analysis orchestration over the in-memory queue."""
import io
import json
import zipfile

import pytest

from databias_pipeline.core.errors import NotFoundError, TransientIOError, ValidationError
from databias_pipeline.jobs.queue import JobOptions, JobState

from sample_data import OTHER_TENANT_ID, TENANT_ID, USER_ID, rows_to_csv, scenario_a_rows


class FlakyStore:
    """Wraps an object store and fails the first `failures` reads."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.reads = 0

    def get_object(self, bucket, key):
        self.reads += 1
        if self.reads <= self.failures:
            raise TransientIOError("object store timeout")
        return self.inner.get_object(bucket, key)

    def put_object(self, bucket, key, data):
        return self.inner.put_object(bucket, key, data)


def _queue_dataset(processor, dataset, analysis_type="bias_analysis", **extra):
    request = {"source": "dataset", "dataset_id": dataset.id, "analysis_type": analysis_type, **extra}
    return processor.queue_analysis_job(request, tenant_id=TENANT_ID, initiated_by_id=USER_ID)


def _actions(storage, analysis_id, tenant_id=TENANT_ID):
    rows = storage.list_activities(tenant_id, entity_type="analysis", entity_id=analysis_id)
    return [a.action for a in reversed(rows)]


def _result(object_store, analysis):
    bucket, key = analysis.results_path[len("local://"):].split("/", 1)
    return json.loads(object_store.get_object(bucket, key))


def test_scenario_a_end_to_end(processor, storage, object_store, make_dataset):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv")
    analysis_id = _queue_dataset(processor, dataset, outcome_column="approved")
    assert storage.get_analysis(analysis_id, TENANT_ID).status == "queued"

    processor.queue.process_next()

    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "completed"
    assert analysis.results_path == f"local://results/tenant_{TENANT_ID}/results/analysis_{analysis_id}.json"
    assert analysis.completed_at is not None

    envelope = _result(object_store, analysis)
    assert envelope["analysis_id"] == analysis_id
    assert envelope["tenant_id"] == TENANT_ID
    result = envelope["result"]
    assert result["total_records"] == 100
    assert result["disparate_impact"]["gender"] == pytest.approx(0.42, abs=0.01)
    assert any(i["severity"] == "high" and i["attribute"] == "gender" for i in result["potential_issues"])
    assert _actions(storage, analysis_id) == ["analysis_queued", "analysis_started", "analysis_completed"]


def test_scenario_b_empty_dataset_fails_without_retry(processor, storage, make_dataset):
    dataset = make_dataset(b"gender,approved\n", "empty.csv", "text/csv")
    analysis_id = _queue_dataset(processor, dataset)

    job = processor.queue.process_next()

    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "failed"
    assert "empty" in analysis.error_message
    assert analysis.error_message.startswith("validation:")
    assert processor.queue.get_job(job.id).state == JobState.FAILED
    assert processor.queue.get_job(job.id).attempts_made == 1
    assert _actions(storage, analysis_id) == ["analysis_queued", "analysis_started", "analysis_failed"]


def test_scenario_c_webhook_without_sensitive_columns(processor, storage, object_store, make_webhook_payload):
    payload = [
        {"product": "widget", "price": 10, "approved": 1},
        {"product": "gadget", "price": 12, "approved": 0},
    ]
    row = make_webhook_payload(payload)
    analysis_id = processor.queue_analysis_job(
        {"source": "webhook", "webhook_payload_id": row.id, "analysis_type": "bias_analysis"},
        tenant_id=TENANT_ID,
        initiated_by_id=USER_ID,
    )
    processor.queue.process_next()

    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "completed"
    result = _result(object_store, analysis)["result"]
    assert result["sensitive_attributes"] == []
    assert result["disparate_impact"] == {}


def test_pii_analysis_of_text_dataset(processor, storage, object_store, make_dataset):
    dataset = make_dataset(b"Write to jane.doe@example.com", "mail.txt", "text/plain")
    analysis_id = _queue_dataset(processor, dataset, analysis_type="pii_detection")
    processor.queue.process_next()

    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "completed"
    result = _result(object_store, analysis)["result"]
    assert result["pii_detected"] is True
    assert result["findings_by_type"]["email"] == 1


def test_pii_archive_with_bad_member(processor, storage, object_store, make_dataset):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        archive.writestr("a.txt", "card 4111111111111111")
        archive.writestr("b.json", "{broken")
        archive.writestr("c.txt", "nothing here")
    dataset = make_dataset(buf.getvalue(), "batch.zip", "application/zip")
    analysis_id = _queue_dataset(processor, dataset, analysis_type="pii_detection")
    processor.queue.process_next()

    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "completed"
    result = _result(object_store, analysis)["result"]
    assert result["total_documents"] == 2
    assert [d["filename"] for d in result["document_summary"]] == ["a.txt", "c.txt"]


def test_bias_analysis_rejects_pdf(processor, storage, make_dataset):
    dataset = make_dataset(b"%PDF-1.4", "report.pdf", "application/pdf")
    analysis_id = _queue_dataset(processor, dataset)
    processor.queue.process_next()
    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "failed"
    assert "Unsupported content type" in analysis.error_message


def test_transient_failures_retry_then_complete(processor, storage, object_store, make_dataset, clock):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv")
    processor.adapter.object_store = FlakyStore(object_store, failures=2)
    analysis_id = _queue_dataset(processor, dataset)

    processor.queue.process_next()
    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "queued"
    assert analysis.error_message == "transient_io: object store timeout"

    clock.advance(5)
    processor.queue.process_next()
    assert storage.get_analysis(analysis_id, TENANT_ID).status == "queued"

    clock.advance(10)
    processor.queue.process_next()
    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "completed"
    assert analysis.error_message is None
    assert _actions(storage, analysis_id) == [
        "analysis_queued",
        "analysis_started",
        "analysis_retry_scheduled",
        "analysis_started",
        "analysis_retry_scheduled",
        "analysis_started",
        "analysis_completed",
    ]


def test_exhausted_attempts_fail_analysis(processor, storage, object_store, make_dataset, clock):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv")
    processor.adapter.object_store = FlakyStore(object_store, failures=10)
    analysis_id = _queue_dataset(processor, dataset)

    for delay in (5, 10, 0):
        job = processor.queue.process_next()
        clock.advance(delay)

    assert job.attempts_made == 3
    assert processor.queue.get_job(job.id).state == JobState.FAILED
    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "failed"
    assert analysis.error_message.startswith("transient_io")
    assert _actions(storage, analysis_id).count("analysis_failed") == 1


def test_unexpected_errors_are_internal(processor, storage, make_dataset, monkeypatch):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv")

    def explode(*args, **kwargs):
        raise KeyError("column")

    monkeypatch.setattr(processor, "_run_analyzer", explode)
    analysis_id = _queue_dataset(processor, dataset)
    job = processor.queue.process_next()

    assert processor.queue.get_job(job.id).state == JobState.DELAYED
    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "queued"
    assert analysis.error_message.startswith("internal:")
    retry = storage.list_activities(TENANT_ID, entity_type="analysis", entity_id=analysis_id)[0]
    assert retry.action == "analysis_retry_scheduled"
    assert "internal:" in retry.description


def test_duplicate_delivery_does_not_downgrade_completed(processor, storage, make_dataset):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv")
    analysis_id = _queue_dataset(processor, dataset)
    job = processor.queue.process_next()
    completed = storage.get_analysis(analysis_id, TENANT_ID)
    assert completed.status == "completed"

    processor.adapter.object_store = FlakyStore(processor.object_store, failures=10)
    duplicate_id = processor.queue.enqueue(job.data, JobOptions(attempts=1))
    processor.queue.process_next()

    assert processor.queue.get_job(duplicate_id).state == JobState.COMPLETED
    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "completed"
    assert analysis.results_path == completed.results_path
    assert "analysis_failed" not in _actions(storage, analysis_id)


def test_stall_on_final_attempt_fails_analysis(processor, storage, make_dataset, clock, monkeypatch):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv")
    original = processor.adapter.load_source

    def stalled_load(*args, **kwargs):
        clock.advance(processor.queue.lock_duration + 1)
        processor.queue.recover_stalled()
        return original(*args, **kwargs)

    monkeypatch.setattr(processor.adapter, "load_source", stalled_load)
    request = {"source": "dataset", "dataset_id": dataset.id, "analysis_type": "bias_analysis"}
    analysis_id = processor.queue_analysis_job(
        request, tenant_id=TENANT_ID, initiated_by_id=USER_ID, options=JobOptions(attempts=1)
    )
    processor.queue.process_next()

    analysis = storage.get_analysis(analysis_id, TENANT_ID)
    assert analysis.status == "failed"
    assert "stalled" in analysis.error_message
    assert analysis.results_path is None


def test_queue_time_validation(processor, storage, make_dataset):
    dataset = make_dataset(b"a\n1\n", "t.csv", "text/csv")
    with pytest.raises(ValidationError):
        _queue_dataset(processor, dataset, analysis_type="sentiment")
    with pytest.raises(ValidationError):
        processor.queue_analysis_job(
            {"source": "dataset", "analysis_type": "bias_analysis"}, tenant_id=TENANT_ID, initiated_by_id=USER_ID
        )
    with pytest.raises(NotFoundError):
        processor.queue_analysis_job(
            {"source": "dataset", "dataset_id": dataset.id, "analysis_type": "bias_analysis"},
            tenant_id=OTHER_TENANT_ID,
            initiated_by_id=USER_ID,
        )
    assert storage.list_analyses(TENANT_ID) == []
    assert storage.list_analyses(OTHER_TENANT_ID) == []


def test_enqueue_failure_marks_analysis_failed(processor, storage, make_dataset):
    dataset = make_dataset(b"a\n1\n", "t.csv", "text/csv")
    processor.queue.close()
    with pytest.raises(TransientIOError):
        _queue_dataset(processor, dataset)
    [analysis] = storage.list_analyses(TENANT_ID)
    assert analysis.status == "failed"
    assert analysis.error_message.startswith("transient_io")


def test_tenant_id_propagates_to_audit_entries(processor, storage, make_dataset):
    dataset = make_dataset(rows_to_csv(scenario_a_rows()), "loans.csv", "text/csv", tenant_id=OTHER_TENANT_ID)
    analysis_id = processor.queue_analysis_job(
        {"source": "dataset", "dataset_id": dataset.id, "analysis_type": "bias_analysis"},
        tenant_id=OTHER_TENANT_ID,
        initiated_by_id=USER_ID,
    )
    processor.queue.process_next()
    entries = storage.list_activities(OTHER_TENANT_ID, entity_id=analysis_id)
    assert entries and all(e.tenant_id == OTHER_TENANT_ID and e.user_id == USER_ID for e in entries)
    assert storage.list_activities(TENANT_ID) == []
    assert storage.get_analysis(analysis_id, TENANT_ID) is None
