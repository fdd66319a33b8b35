"""SQLAlchemy models for analyses, their sources, audit activity and queued jobs.

Every tenant-owned table carries ``tenant_id``; repository queries always
filter on it.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisStatus(str, enum.Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[AnalysisStatus] = frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.FAILED})

# processing -> queued is a scheduled retry after a retryable failure;
# terminal states have no way out.
ALLOWED_TRANSITIONS: Dict[AnalysisStatus, FrozenSet[AnalysisStatus]] = {
    AnalysisStatus.PENDING: frozenset({AnalysisStatus.QUEUED, AnalysisStatus.FAILED}),
    AnalysisStatus.QUEUED: frozenset({AnalysisStatus.PROCESSING, AnalysisStatus.FAILED}),
    AnalysisStatus.PROCESSING: frozenset(
        {AnalysisStatus.COMPLETED, AnalysisStatus.FAILED, AnalysisStatus.QUEUED}
    ),
    AnalysisStatus.COMPLETED: frozenset(),
    AnalysisStatus.FAILED: frozenset(),
}


def allowed_predecessors(target: AnalysisStatus) -> List[AnalysisStatus]:
    return [src for src, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class Dataset(Base):
    """Uploaded file held in object storage; the pipeline only reads its location and type."""

    __tablename__ = "datasets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(256), nullable=False)
    file_name = Column(String(512), nullable=False)
    file_type = Column(String(128), nullable=False)  # content type, e.g. text/csv
    file_size = Column(Integer, nullable=False, default=0)
    bucket = Column(String(256), nullable=False)
    object_key = Column(String(1024), nullable=False)
    uploaded_by_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(256), nullable=False)
    secret = Column(String(256), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    analysis_type = Column(String(64), nullable=False, default="bias_analysis")
    created_by_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class WebhookPayload(Base):
    """Raw JSON body received by a webhook."""

    __tablename__ = "webhook_payloads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_id = Column(Integer, ForeignKey("webhooks.id"), nullable=False, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Analysis(Base):
    __tablename__ = "analyses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(512), nullable=False)
    analysis_type = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=AnalysisStatus.PENDING.value, index=True)
    source = Column(String(20), nullable=False)  # dataset | webhook
    dataset_id = Column(Integer, ForeignKey("datasets.id"), nullable=True)
    webhook_payload_id = Column(Integer, ForeignKey("webhook_payloads.id"), nullable=True)
    outcome_column = Column(String(256), nullable=True)
    initiated_by_id = Column(Integer, nullable=False)
    results_path = Column(String(1024), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "analysis_type": self.analysis_type,
            "status": self.status,
            "source": self.source,
            "dataset_id": self.dataset_id,
            "webhook_payload_id": self.webhook_payload_id,
            "outcome_column": self.outcome_column,
            "initiated_by_id": self.initiated_by_id,
            "results_path": self.results_path,
            "error": self.error_message,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


class Activity(Base):
    """Append-only audit trail, always scoped to a tenant and a user."""

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False)
    description = Column(Text, nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(Integer, nullable=False)
    tenant_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "description": self.description,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
        }


class JobRecord(Base):
    """Row backing the durable job queue. Times are Unix seconds."""

    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_queue_state_available", "queue_name", "state", "available_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(128), nullable=False)
    payload = Column(JSON, nullable=False)
    state = Column(String(16), nullable=False)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    backoff_delay = Column(Float, nullable=False)
    available_at = Column(Float, nullable=False)
    locked_by = Column(String(128), nullable=True)
    locked_until = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    finished_at = Column(Float, nullable=True)
