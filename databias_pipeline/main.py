"""FastAPI entrypoint exposing routes only.

Routes delegate to the analysis processor for queueing and to the tenant-scoped
store for reads. Tenant and user identity arrive in the ``X-Tenant-Id`` and
``X-User-Id`` headers; authentication happens upstream.
"""
import hashlib
import hmac
import json
import threading
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.errors import NotFoundError, PipelineError, TransientIOError, ValidationError
from .core.logger import get_logger
from .core.schema import (
    ActivityResponse,
    AnalysisResponse,
    DatasetResponse,
    QueueAnalysisRequest,
    QueueAnalysisResponse,
    SourceKind,
    WebhookCreateRequest,
    WebhookReceipt,
    WebhookResponse,
)
from .ingestion.extraction import resolve_file_type, safe_filename
from .ingestion.object_store import parse_locator
from .jobs.processor import AnalysisProcessor, build_processor
from .jobs.worker import QueueWorker
from .storage.models import AnalysisStatus

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

_processor: Optional[AnalysisProcessor] = None
_processor_lock = threading.Lock()


def get_processor() -> AnalysisProcessor:
    global _processor
    with _processor_lock:
        if _processor is None:
            _processor = build_processor()
        return _processor


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Optionally run a queue worker inside the API process."""
    worker = None
    if settings.EMBEDDED_WORKER:
        worker = QueueWorker(get_processor().queue)
        worker.start()
    yield
    if worker is not None:
        worker.stop()


app = FastAPI(title="DataBias Pipeline API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    TransientIOError: 503,
}


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status_code, content={"error": exc.summary()})


def _analysis_response(analysis) -> AnalysisResponse:
    data = analysis.to_dict()
    if analysis.status == AnalysisStatus.COMPLETED.value:
        data["results_url"] = f"/analyses/{analysis.id}/results"
    return AnalysisResponse(**data)


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded."""
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


@app.get("/")
def root():
    return {
        "message": "DataBias Pipeline API",
        "routes": ["/datasets", "/analyses", "/activities", "/webhooks"],
    }


@app.post("/datasets", response_model=DatasetResponse, status_code=201)
async def upload_dataset(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    x_tenant_id: int = Header(...),
    x_user_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    raw = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(raw) > settings.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {settings.MAX_UPLOAD_BYTES} byte upload limit")
    filename = safe_filename(file.filename or "upload")
    content_type = file.content_type or "application/octet-stream"
    if resolve_file_type(content_type, filename) is None:
        raise ValidationError(f"Unsupported file type: {content_type}")

    key = f"tenant_{x_tenant_id}/datasets/{uuid.uuid4().hex}_{filename}"
    processor.object_store.put_object(settings.DATASETS_BUCKET, key, raw)
    dataset = processor.storage.create_dataset(
        tenant_id=x_tenant_id,
        name=name or filename,
        file_name=filename,
        file_type=content_type,
        bucket=settings.DATASETS_BUCKET,
        object_key=key,
        uploaded_by_id=x_user_id,
        file_size=len(raw),
    )
    processor.storage.log_activity(
        action="dataset_uploaded",
        description=f"Uploaded dataset: {dataset.name}",
        entity_type="dataset",
        entity_id=dataset.id,
        tenant_id=x_tenant_id,
        user_id=x_user_id,
    )
    return DatasetResponse.model_validate(dataset)


@app.post("/analyses", response_model=QueueAnalysisResponse, status_code=202)
def queue_analysis(
    payload: QueueAnalysisRequest,
    x_tenant_id: int = Header(...),
    x_user_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    analysis_id = processor.queue_analysis_job(payload, tenant_id=x_tenant_id, initiated_by_id=x_user_id)
    analysis = processor.storage.get_analysis(analysis_id, x_tenant_id)
    return QueueAnalysisResponse(analysis_id=analysis_id, status=analysis.status)


@app.get("/analyses/{analysis_id}", response_model=AnalysisResponse)
def get_analysis(
    analysis_id: int,
    x_tenant_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    analysis = processor.storage.get_analysis(analysis_id, x_tenant_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return _analysis_response(analysis)


@app.get("/analyses/{analysis_id}/results")
def get_analysis_results(
    analysis_id: int,
    x_tenant_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    """Result document of a completed analysis."""
    analysis = processor.storage.get_analysis(analysis_id, x_tenant_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    if analysis.status != AnalysisStatus.COMPLETED.value or not analysis.results_path:
        raise HTTPException(status_code=409, detail=f"Analysis is {analysis.status}; results are not available")
    bucket, key = parse_locator(analysis.results_path)
    return json.loads(processor.object_store.get_object(bucket, key))


@app.get("/analyses", response_model=List[AnalysisResponse])
def list_analyses(
    status: Optional[AnalysisStatus] = None,
    limit: int = 50,
    x_tenant_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    rows = processor.storage.list_analyses(x_tenant_id, status=status, limit=min(max(limit, 1), 500))
    return [_analysis_response(a) for a in rows]


@app.get("/activities", response_model=List[ActivityResponse])
def list_activities(
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    limit: int = 100,
    x_tenant_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    rows = processor.storage.list_activities(
        x_tenant_id, entity_type=entity_type, entity_id=entity_id, limit=min(max(limit, 1), 500)
    )
    return [ActivityResponse(**a.to_dict()) for a in rows]


@app.post("/webhooks", response_model=WebhookResponse, status_code=201)
def create_webhook(
    payload: WebhookCreateRequest,
    x_tenant_id: int = Header(...),
    x_user_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    webhook = processor.storage.create_webhook(
        tenant_id=x_tenant_id,
        name=payload.name,
        created_by_id=x_user_id,
        secret=payload.secret,
        analysis_type=payload.analysis_type.value,
    )
    processor.storage.log_activity(
        action="webhook_created",
        description=f"Created webhook: {webhook.name}",
        entity_type="webhook",
        entity_id=webhook.id,
        tenant_id=x_tenant_id,
        user_id=x_user_id,
    )
    return WebhookResponse.model_validate(webhook)


@app.post("/webhooks/{webhook_id}/receive", response_model=WebhookReceipt)
async def receive_webhook(
    webhook_id: int,
    request: Request,
    x_tenant_id: int = Header(...),
    processor: AnalysisProcessor = Depends(get_processor),
):
    webhook = processor.storage.get_webhook(webhook_id, x_tenant_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    if not webhook.is_active:
        raise HTTPException(status_code=403, detail="Webhook is inactive")

    body = await request.body()
    if webhook.secret and not verify_signature(webhook.secret, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("webhook_signature_rejected", webhook_id=webhook_id, tenant_id=x_tenant_id)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        data = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body must be valid JSON")

    stored = processor.storage.store_webhook_payload(webhook.id, webhook.tenant_id, data)
    processor.storage.log_activity(
        action="webhook_data_received",
        description=f"Received data from webhook: {webhook.name}",
        entity_type="webhook_data",
        entity_id=stored.id,
        tenant_id=webhook.tenant_id,
        user_id=webhook.created_by_id,
    )
    analysis_id = processor.queue_analysis_job(
        QueueAnalysisRequest(
            source=SourceKind.WEBHOOK,
            analysis_type=webhook.analysis_type,
            webhook_payload_id=stored.id,
        ),
        tenant_id=webhook.tenant_id,
        initiated_by_id=webhook.created_by_id,
    )
    return WebhookReceipt(message="Webhook data received", payload_id=stored.id, analysis_id=analysis_id)
