"""Pydantic models shared by the API, the job queue and the analyzers.

Defines request/response schemas, the serialized job payload, source
descriptors and the immutable analyzer result objects.
"""
from datetime import datetime
from enum import Enum
from typing import Any, List, Dict, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field


class AnalysisType(str, Enum):
    BIAS_ANALYSIS = "bias_analysis"
    PII_DETECTION = "pii_detection"


class SourceKind(str, Enum):
    DATASET = "dataset"
    WEBHOOK = "webhook"


Severity = Literal["low", "medium", "high"]


# --- Requests and job payloads ---

class QueueAnalysisRequest(BaseModel):
    source: SourceKind
    analysis_type: str
    dataset_id: Optional[int] = None
    webhook_payload_id: Optional[int] = None
    outcome_column: Optional[str] = None


class SourceDescriptor(BaseModel):
    """Where an analysis reads its input from.

    Datasets carry the object-store location captured at queue time; webhook
    payloads are referenced by id only.
    """

    kind: SourceKind
    dataset_id: Optional[int] = None
    bucket: Optional[str] = None
    key: Optional[str] = None
    webhook_payload_id: Optional[int] = None

    def describe(self) -> str:
        if self.kind == SourceKind.DATASET:
            return f"dataset {self.dataset_id} ({self.bucket}/{self.key})"
        return f"webhook payload {self.webhook_payload_id}"


class AnalysisJobData(BaseModel):
    analysis_id: int
    tenant_id: int
    initiated_by_id: int
    analysis_type: str
    source: SourceDescriptor
    outcome_column: Optional[str] = None


class ExtractedDocument(BaseModel):
    """Plain text pulled out of one document, ready for PII scanning."""

    text: str
    filename: str
    path: str
    file_type: str = "txt"
    metadata: Dict[str, Any] = Field(default_factory=dict)


# --- Analyzer results (immutable once produced) ---

class ColumnDistribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int
    missing: int = 0
    unique_values: int = 0
    distribution: Dict[str, int] = Field(default_factory=dict)
    numeric: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    mean: Optional[float] = None
    median: Optional[float] = None
    std_dev: Optional[float] = None
    quartiles: Optional[Dict[str, float]] = None
    outliers: Optional[int] = None
    outliers_percent: Optional[float] = None


class PotentialIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    attribute: str
    issue: str
    severity: Severity
    explanation: str


class DataQualityIssues(BaseModel):
    model_config = ConfigDict(frozen=True)

    missing_values: Dict[str, int] = Field(default_factory=dict)
    skewed_distributions: List[str] = Field(default_factory=list)
    outliers: Dict[str, int] = Field(default_factory=dict)


class BiasAnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_records: int
    columns: List[str]
    outcome_column: Optional[str] = None
    distribution_stats: Dict[str, ColumnDistribution]
    sensitive_attributes: List[str]
    disparate_impact: Dict[str, float] = Field(default_factory=dict)
    group_outcome_rates: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    statistical_parity_difference: Dict[str, float] = Field(default_factory=dict)
    feature_influence: Dict[str, float] = Field(default_factory=dict)
    potential_issues: List[PotentialIssue] = Field(default_factory=list)
    data_quality: DataQualityIssues = Field(default_factory=DataQualityIssues)
    recommended_actions: List[str] = Field(default_factory=list)


class PiiFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    value: str
    confidence: float
    path: str
    filename: str
    start_index: int
    end_index: int
    context: str


class DocumentSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    file_type: str = "txt"
    pii_count: int


class PiiDetectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    findings: List[PiiFinding]
    total_documents: int
    processed_documents: int
    pii_detected: bool
    document_summary: List[DocumentSummary]
    findings_by_type: Dict[str, int] = Field(default_factory=dict)


# --- API responses ---

class AnalysisResponse(BaseModel):
    id: int
    tenant_id: int
    analysis_type: str
    status: str
    source: str
    dataset_id: Optional[int] = None
    webhook_payload_id: Optional[int] = None
    outcome_column: Optional[str] = None
    initiated_by_id: int
    results_path: Optional[str] = None
    results_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class DatasetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    name: str
    file_name: str
    file_type: str
    file_size: int
    created_at: datetime


class WebhookCreateRequest(BaseModel):
    name: str
    secret: Optional[str] = None
    analysis_type: AnalysisType = AnalysisType.BIAS_ANALYSIS


class WebhookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    name: str
    is_active: bool
    analysis_type: str
    created_at: datetime


class QueueAnalysisResponse(BaseModel):
    analysis_id: int
    status: str


class ActivityResponse(BaseModel):
    id: int
    action: str
    description: str
    entity_type: str
    entity_id: int
    tenant_id: int
    user_id: int
    created_at: datetime


class WebhookReceipt(BaseModel):
    message: str
    payload_id: int
    analysis_id: Optional[int] = None
