"""Tests for the tenant-scoped store and the guarded status transitions."""
from databias_pipeline.storage.models import AnalysisStatus, allowed_predecessors

from sample_data import OTHER_TENANT_ID, TENANT_ID, USER_ID


def _new_analysis(storage, tenant_id=TENANT_ID):
    return storage.create_analysis(
        tenant_id=tenant_id,
        analysis_type="bias_analysis",
        source="webhook",
        initiated_by_id=USER_ID,
        webhook_payload_id=None,
    )


def test_transition_table():
    assert allowed_predecessors(AnalysisStatus.PROCESSING) == [AnalysisStatus.QUEUED]
    assert set(allowed_predecessors(AnalysisStatus.COMPLETED)) == {AnalysisStatus.PROCESSING}
    assert set(allowed_predecessors(AnalysisStatus.QUEUED)) == {AnalysisStatus.PENDING, AnalysisStatus.PROCESSING}
    assert AnalysisStatus.COMPLETED.is_terminal and AnalysisStatus.FAILED.is_terminal
    assert not AnalysisStatus.PROCESSING.is_terminal


def test_status_never_skips_a_state(storage):
    analysis = _new_analysis(storage)
    assert analysis.status == "pending"
    assert storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.PROCESSING) is None
    assert storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.COMPLETED) is None

    assert storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.QUEUED).status == "queued"
    assert storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.COMPLETED) is None
    assert storage.get_analysis(analysis.id, TENANT_ID).status == "queued"

    processing = storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.PROCESSING)
    assert processing.status == "processing"
    assert processing.completed_at is None

    done = storage.update_analysis_status(
        analysis.id, TENANT_ID, AnalysisStatus.COMPLETED, results_path="local://results/a.json"
    )
    assert done.status == "completed"
    assert done.results_path == "local://results/a.json"
    assert done.completed_at is not None


def test_terminal_status_is_final(storage):
    analysis = _new_analysis(storage)
    for status in (AnalysisStatus.QUEUED, AnalysisStatus.PROCESSING, AnalysisStatus.COMPLETED):
        storage.update_analysis_status(analysis.id, TENANT_ID, status)
    for status in AnalysisStatus:
        assert storage.update_analysis_status(analysis.id, TENANT_ID, status, error="late") is None
    final = storage.get_analysis(analysis.id, TENANT_ID)
    assert final.status == "completed"
    assert final.error_message is None


def test_retry_returns_processing_to_queued(storage):
    analysis = _new_analysis(storage)
    storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.QUEUED)
    storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.PROCESSING)
    requeued = storage.update_analysis_status(
        analysis.id, TENANT_ID, AnalysisStatus.QUEUED, error="transient_io: timeout"
    )
    assert requeued.status == "queued"
    assert requeued.error_message == "transient_io: timeout"

    storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.PROCESSING)
    done = storage.update_analysis_status(analysis.id, TENANT_ID, AnalysisStatus.COMPLETED)
    assert done.status == "completed"
    assert done.error_message is None


def test_reads_and_writes_are_tenant_scoped(storage):
    analysis = _new_analysis(storage)
    assert storage.get_analysis(analysis.id, OTHER_TENANT_ID) is None
    assert storage.update_analysis_status(analysis.id, OTHER_TENANT_ID, AnalysisStatus.QUEUED) is None
    assert storage.get_analysis(analysis.id, TENANT_ID).status == "pending"

    _new_analysis(storage, tenant_id=OTHER_TENANT_ID)
    assert [a.id for a in storage.list_analyses(TENANT_ID)] == [analysis.id]


def test_list_analyses_by_status(storage):
    first = _new_analysis(storage)
    second = _new_analysis(storage)
    storage.update_analysis_status(second.id, TENANT_ID, AnalysisStatus.QUEUED)
    assert [a.id for a in storage.list_analyses(TENANT_ID, status="queued")] == [second.id]
    assert [a.id for a in storage.list_analyses(TENANT_ID, status=AnalysisStatus.PENDING)] == [first.id]


def test_activities(storage):
    storage.log_activity("analysis_queued", "queued", "analysis", 1, TENANT_ID, USER_ID)
    storage.log_activity("analysis_queued", "queued", "analysis", 2, OTHER_TENANT_ID, USER_ID)
    storage.log_activity("webhook_created", "created", "webhook", 3, TENANT_ID, USER_ID)

    mine = storage.list_activities(TENANT_ID)
    assert [a.entity_id for a in mine] == [3, 1]
    assert all(a.tenant_id == TENANT_ID for a in mine)
    assert [a.entity_id for a in storage.list_activities(TENANT_ID, entity_type="analysis")] == [1]
