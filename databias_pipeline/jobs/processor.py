"""Analysis orchestration.

``AnalysisProcessor`` creates analyses, enqueues their jobs and, as the queue
consumer, drives each delivery through ingestion, the selected analyzer,
result persistence and the audit trail while enforcing the status machine::

    pending -> queued -> processing -> completed | failed

A delivery for an analysis already in a terminal state is a no-op. Retryable
failures with attempts left put the analysis back to ``queued`` and re-raise so
the queue applies backoff; everything else marks it ``failed``.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PayloadValidationError

from ..core.analysis import analyze_bias
from ..core.config import settings
from ..core.errors import InternalError, NotFoundError, PipelineError, ValidationError, error_summary
from ..core.logger import get_logger
from ..core.pii import detect_pii_in_documents
from ..core.schema import (
    AnalysisJobData,
    AnalysisType,
    QueueAnalysisRequest,
    SourceDescriptor,
    SourceKind,
)
from ..ingestion.adapter import Documents, IngestionAdapter, JsonValue, SourceData, TabularRows
from ..ingestion.object_store import LocalObjectStore, ObjectStore
from ..storage.database import init_db, make_engine, make_session_factory
from ..storage.models import AnalysisStatus
from ..storage.repository import Storage
from .queue import InMemoryJobQueue, Job, JobOptions, JobQueue, QueueEvent, log_queue_events
from .sql_queue import SqlJobQueue

logger = get_logger(__name__)

ENTITY_TYPE = "analysis"


def result_key(tenant_id: int, analysis_id: int) -> str:
    return f"tenant_{tenant_id}/results/analysis_{analysis_id}.json"


class AnalysisProcessor:
    def __init__(
        self,
        storage: Storage,
        queue: JobQueue,
        object_store: ObjectStore,
        adapter: Optional[IngestionAdapter] = None,
        results_bucket: Optional[str] = None,
    ):
        self.storage = storage
        self.queue = queue
        self.object_store = object_store
        self.adapter = adapter or IngestionAdapter(storage, object_store)
        self.results_bucket = results_bucket or settings.RESULTS_BUCKET
        queue.register_consumer(self.handle_job)
        queue.on(QueueEvent.FAILED, self.on_job_failed)

    # --- Producer side ---

    def queue_analysis_job(
        self,
        request: Union[QueueAnalysisRequest, Dict[str, Any]],
        tenant_id: int,
        initiated_by_id: int,
        options: Optional[JobOptions] = None,
    ) -> int:
        """Create a pending analysis for the request and enqueue its job.

        Returns the analysis id. Raises ValidationError for a missing source
        reference or unknown analysis type and NotFoundError when the
        referenced dataset or webhook payload does not exist for the tenant.
        """
        if not isinstance(request, QueueAnalysisRequest):
            try:
                request = QueueAnalysisRequest.model_validate(request)
            except PayloadValidationError as e:
                raise ValidationError(f"Invalid analysis request: {e}", cause=e) from e
        analysis_type = self._analysis_type(request.analysis_type)
        source = self._resolve_source(request, tenant_id)

        analysis = self.storage.create_analysis(
            tenant_id=tenant_id,
            analysis_type=analysis_type.value,
            source=source.kind.value,
            initiated_by_id=initiated_by_id,
            dataset_id=source.dataset_id,
            webhook_payload_id=source.webhook_payload_id,
            outcome_column=request.outcome_column,
        )
        self.storage.update_analysis_status(analysis.id, tenant_id, AnalysisStatus.QUEUED)

        job_data = AnalysisJobData(
            analysis_id=analysis.id,
            tenant_id=tenant_id,
            initiated_by_id=initiated_by_id,
            analysis_type=analysis_type.value,
            source=source,
            outcome_column=request.outcome_column,
        )
        try:
            job_id = self.queue.enqueue(job_data.model_dump(mode="json"), options)
        except PipelineError as e:
            self._mark_failed(job_data, e.summary())
            raise

        self._audit(
            job_data,
            "analysis_queued",
            f"Queued {analysis_type.value} of {source.describe()}",
        )
        logger.info(
            "analysis_queued",
            analysis_id=analysis.id,
            tenant_id=tenant_id,
            job_id=job_id,
            analysis_type=analysis_type.value,
        )
        return analysis.id

    def _resolve_source(self, request: QueueAnalysisRequest, tenant_id: int) -> SourceDescriptor:
        if request.source == SourceKind.DATASET:
            if request.dataset_id is None:
                raise ValidationError("Dataset ID is required for dataset source")
            dataset = self.storage.get_dataset(request.dataset_id, tenant_id)
            if dataset is None:
                raise NotFoundError(f"Dataset {request.dataset_id} not found")
            return SourceDescriptor(
                kind=SourceKind.DATASET,
                dataset_id=dataset.id,
                bucket=dataset.bucket,
                key=dataset.object_key,
            )
        if request.webhook_payload_id is None:
            raise ValidationError("Webhook payload ID is required for webhook source")
        if self.storage.get_webhook_payload(request.webhook_payload_id, tenant_id) is None:
            raise NotFoundError(f"Webhook payload {request.webhook_payload_id} not found")
        return SourceDescriptor(kind=SourceKind.WEBHOOK, webhook_payload_id=request.webhook_payload_id)

    @staticmethod
    def _analysis_type(value: Union[AnalysisType, str]) -> AnalysisType:
        try:
            return AnalysisType(value)
        except ValueError as e:
            raise ValidationError(f"Unsupported analysis type: {value}", cause=e) from e

    # --- Consumer side ---

    def handle_job(self, job: Job) -> Optional[str]:
        """Process one delivery; returns the result locator, or None for a stale delivery."""
        try:
            data = AnalysisJobData.model_validate(job.data)
        except PayloadValidationError as e:
            raise ValidationError(f"Malformed job payload for job {job.id}: {e}", cause=e) from e

        log = logger.bind(
            analysis_id=data.analysis_id,
            tenant_id=data.tenant_id,
            job_id=job.id,
            attempt=job.attempts_made,
        )
        analysis = self.storage.get_analysis(data.analysis_id, data.tenant_id)
        if analysis is None:
            raise NotFoundError(f"Analysis {data.analysis_id} not found")

        status = AnalysisStatus(analysis.status)
        if status.is_terminal:
            log.info("job_stale_delivery", status=status.value)
            return None
        if status == AnalysisStatus.PROCESSING:
            log.warning("analysis_redelivered")
        else:
            if status == AnalysisStatus.PENDING:
                self.storage.update_analysis_status(data.analysis_id, data.tenant_id, AnalysisStatus.QUEUED)
            started = self.storage.update_analysis_status(
                data.analysis_id, data.tenant_id, AnalysisStatus.PROCESSING
            )
            if started is None:
                current = self.storage.get_analysis(data.analysis_id, data.tenant_id)
                if current is not None and AnalysisStatus(current.status).is_terminal:
                    log.info("job_stale_delivery", status=current.status)
                    return None
                raise InternalError(f"Analysis {data.analysis_id} could not enter processing")
            self._audit(data, "analysis_started", f"Started {data.analysis_type} (attempt {job.attempts_made})")
        log.info("analysis_processing", analysis_type=data.analysis_type, source=data.source.describe())

        try:
            analysis_type = self._analysis_type(data.analysis_type)
            source_data = self.adapter.load_source(data.source, data.tenant_id, analysis_type)
            result = self._run_analyzer(analysis_type, source_data, data)
            locator = self._save_result(data, result)
        except PipelineError as e:
            self._handle_failure(data, job, e)
            raise
        except Exception as e:
            log.exception("analysis_unexpected_error")
            error = InternalError(f"Unexpected error: {e}", cause=e)
            self._handle_failure(data, job, error)
            raise error from e

        completed = self.storage.update_analysis_status(
            data.analysis_id, data.tenant_id, AnalysisStatus.COMPLETED, results_path=locator
        )
        if completed is None:
            log.warning("analysis_completion_rejected")
            return locator
        self._audit(data, "analysis_completed", f"Completed {data.analysis_type}; results at {locator}")
        log.info("analysis_completed", results_path=locator)
        return locator

    def _run_analyzer(self, analysis_type: AnalysisType, source_data: SourceData, data: AnalysisJobData):
        if analysis_type == AnalysisType.BIAS_ANALYSIS:
            if not isinstance(source_data, (TabularRows, JsonValue)):
                raise ValidationError("Bias analysis requires tabular or JSON input")
            return analyze_bias(source_data.records(), outcome_column=data.outcome_column)
        if not isinstance(source_data, Documents):
            raise ValidationError("PII detection requires document input")
        if not source_data.documents:
            raise ValidationError("No extractable documents in source")
        return detect_pii_in_documents(source_data.documents)

    def _save_result(self, data: AnalysisJobData, result) -> str:
        envelope = {
            "analysis_id": data.analysis_id,
            "tenant_id": data.tenant_id,
            "analysis_type": data.analysis_type,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "result": result.model_dump(mode="json"),
        }
        body = json.dumps(envelope, indent=2, default=str).encode("utf-8")
        return self.object_store.put_object(
            self.results_bucket, result_key(data.tenant_id, data.analysis_id), body
        )

    def _handle_failure(self, data: AnalysisJobData, job: Job, error: PipelineError) -> None:
        summary = error.summary()
        if error.retryable and not job.is_final_attempt:
            requeued = self.storage.update_analysis_status(
                data.analysis_id, data.tenant_id, AnalysisStatus.QUEUED, error=summary
            )
            if requeued is not None:
                self._audit(
                    data,
                    "analysis_retry_scheduled",
                    f"Attempt {job.attempts_made} of {job.max_attempts} failed ({summary}); retry scheduled",
                )
            return
        self._mark_failed(data, summary)

    def _mark_failed(self, data: AnalysisJobData, summary: str) -> bool:
        failed = self.storage.update_analysis_status(
            data.analysis_id, data.tenant_id, AnalysisStatus.FAILED, error=summary
        )
        if failed is None:
            return False
        self._audit(data, "analysis_failed", f"Analysis failed ({summary})")
        logger.error("analysis_failed", analysis_id=data.analysis_id, tenant_id=data.tenant_id, error=summary)
        return True

    def on_job_failed(self, job: Job, error: Any = None, **details: Any) -> None:
        """Mark the bound analysis failed once its job is permanently failed.

        Covers failures that never reached the handler's own failure path, such
        as a job stalling on its final attempt.
        """
        try:
            data = AnalysisJobData.model_validate(job.data)
        except PayloadValidationError:
            logger.error("job_failed_unbound", job_id=job.id)
            return
        summary = error_summary(error) if isinstance(error, BaseException) else f"{InternalError.category}: {error}"
        self._mark_failed(data, summary)

    def _audit(self, data: AnalysisJobData, action: str, description: str) -> None:
        self.storage.log_activity(
            action=action,
            description=f"Analysis {data.analysis_id}: {description}",
            entity_type=ENTITY_TYPE,
            entity_id=data.analysis_id,
            tenant_id=data.tenant_id,
            user_id=data.initiated_by_id,
        )

    def close(self, timeout: Optional[float] = None) -> bool:
        return self.queue.close(timeout=timeout)


def build_queue(session_factory, backend: Optional[str] = None, **kwargs) -> JobQueue:
    backend = (backend or settings.QUEUE_BACKEND).lower()
    if backend == "memory":
        queue: JobQueue = InMemoryJobQueue(**kwargs)
    elif backend == "sql":
        queue = SqlJobQueue(session_factory, **kwargs)
    else:
        raise ValueError(f"Unknown queue backend: {backend}")
    log_queue_events(queue)
    return queue


def build_processor(
    database_url: Optional[str] = None,
    object_store_root: Optional[str] = None,
    queue_backend: Optional[str] = None,
    **queue_kwargs: Any,
) -> AnalysisProcessor:
    """Wire storage, object store, queue and processor from settings."""
    engine = make_engine(database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)
    storage = Storage(session_factory)
    object_store = LocalObjectStore(object_store_root)
    queue = build_queue(session_factory, queue_backend, **queue_kwargs)
    return AnalysisProcessor(storage, queue, object_store)
