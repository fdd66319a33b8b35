"""Tenant-scoped access to analyses, their sources and the audit trail.

Every read and write filters on ``tenant_id``. Status changes go through
``update_analysis_status``, a compare-and-set against the allowed predecessor
states, so a late or duplicate job delivery can never rewrite a terminal
analysis.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.errors import TransientIOError
from ..core.logger import get_logger
from .database import session_scope
from .models import (
    Activity,
    Analysis,
    AnalysisStatus,
    Dataset,
    Webhook,
    WebhookPayload,
    allowed_predecessors,
)

logger = get_logger(__name__)


class Storage:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    # --- Datasets ---

    def create_dataset(
        self,
        tenant_id: int,
        name: str,
        file_name: str,
        file_type: str,
        bucket: str,
        object_key: str,
        uploaded_by_id: int,
        file_size: int = 0,
    ) -> Dataset:
        with self._scope() as session:
            dataset = Dataset(
                tenant_id=tenant_id,
                name=name,
                file_name=file_name,
                file_type=file_type,
                file_size=file_size,
                bucket=bucket,
                object_key=object_key,
                uploaded_by_id=uploaded_by_id,
            )
            session.add(dataset)
            session.flush()
            return dataset

    def get_dataset(self, dataset_id: int, tenant_id: int) -> Optional[Dataset]:
        with self._scope() as session:
            return session.execute(
                select(Dataset).where(Dataset.id == dataset_id, Dataset.tenant_id == tenant_id)
            ).scalar_one_or_none()

    # --- Webhooks ---

    def create_webhook(
        self,
        tenant_id: int,
        name: str,
        created_by_id: int,
        secret: Optional[str] = None,
        analysis_type: str = "bias_analysis",
        is_active: bool = True,
    ) -> Webhook:
        with self._scope() as session:
            webhook = Webhook(
                tenant_id=tenant_id,
                name=name,
                secret=secret,
                analysis_type=analysis_type,
                is_active=is_active,
                created_by_id=created_by_id,
            )
            session.add(webhook)
            session.flush()
            return webhook

    def get_webhook(self, webhook_id: int, tenant_id: int) -> Optional[Webhook]:
        with self._scope() as session:
            return session.execute(
                select(Webhook).where(Webhook.id == webhook_id, Webhook.tenant_id == tenant_id)
            ).scalar_one_or_none()

    def store_webhook_payload(self, webhook_id: int, tenant_id: int, payload: Any) -> WebhookPayload:
        with self._scope() as session:
            row = WebhookPayload(webhook_id=webhook_id, tenant_id=tenant_id, payload=payload)
            session.add(row)
            session.flush()
            return row

    def get_webhook_payload(self, payload_id: int, tenant_id: int) -> Optional[WebhookPayload]:
        with self._scope() as session:
            return session.execute(
                select(WebhookPayload).where(
                    WebhookPayload.id == payload_id,
                    WebhookPayload.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()

    # --- Analyses ---

    def create_analysis(
        self,
        tenant_id: int,
        analysis_type: str,
        source: str,
        initiated_by_id: int,
        name: Optional[str] = None,
        dataset_id: Optional[int] = None,
        webhook_payload_id: Optional[int] = None,
        outcome_column: Optional[str] = None,
    ) -> Analysis:
        """Insert a new analysis in ``pending``."""
        if name is None:
            ref = dataset_id if source == "dataset" else webhook_payload_id
            name = f"{analysis_type} of {source} {ref}"
        with self._scope() as session:
            analysis = Analysis(
                tenant_id=tenant_id,
                name=name,
                analysis_type=analysis_type,
                status=AnalysisStatus.PENDING.value,
                source=source,
                dataset_id=dataset_id,
                webhook_payload_id=webhook_payload_id,
                outcome_column=outcome_column,
                initiated_by_id=initiated_by_id,
            )
            session.add(analysis)
            session.flush()
            logger.info("analysis_created", analysis_id=analysis.id, tenant_id=tenant_id, analysis_type=analysis_type)
            return analysis

    def get_analysis(self, analysis_id: int, tenant_id: int) -> Optional[Analysis]:
        with self._scope() as session:
            return session.execute(
                select(Analysis).where(Analysis.id == analysis_id, Analysis.tenant_id == tenant_id)
            ).scalar_one_or_none()

    def list_analyses(
        self,
        tenant_id: int,
        status: Optional[Union[AnalysisStatus, str]] = None,
        limit: int = 50,
    ) -> List[Analysis]:
        stmt = select(Analysis).where(Analysis.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(Analysis.status == AnalysisStatus(status).value)
        stmt = stmt.order_by(Analysis.created_at.desc(), Analysis.id.desc()).limit(limit)
        with self._scope() as session:
            return list(session.execute(stmt).scalars())

    def update_analysis_status(
        self,
        analysis_id: int,
        tenant_id: int,
        status: Union[AnalysisStatus, str],
        results_path: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[Analysis]:
        """Move an analysis to `status` if its current state allows it.

        Returns the updated analysis, or None when the analysis does not exist
        for the tenant or its current status is not a legal predecessor.
        """
        target = AnalysisStatus(status)
        now = datetime.now(timezone.utc)
        values = {"status": target.value, "updated_at": now}
        if results_path is not None:
            values["results_path"] = results_path
        if error is not None:
            values["error_message"] = error
        elif target == AnalysisStatus.COMPLETED:
            values["error_message"] = None
        if target.is_terminal:
            values["completed_at"] = now

        stmt = (
            update(Analysis)
            .where(
                Analysis.id == analysis_id,
                Analysis.tenant_id == tenant_id,
                Analysis.status.in_([s.value for s in allowed_predecessors(target)]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._scope() as session:
                result = session.execute(stmt)
                if result.rowcount == 0:
                    current = session.execute(
                        select(Analysis.status).where(
                            Analysis.id == analysis_id, Analysis.tenant_id == tenant_id
                        )
                    ).scalar_one_or_none()
                    logger.warning(
                        "analysis_transition_rejected",
                        analysis_id=analysis_id,
                        tenant_id=tenant_id,
                        current=current,
                        target=target.value,
                    )
                    return None
                return session.execute(
                    select(Analysis).where(Analysis.id == analysis_id, Analysis.tenant_id == tenant_id)
                ).scalar_one()
        except SQLAlchemyError as e:
            raise TransientIOError(f"Failed to update analysis {analysis_id}: {e}", cause=e) from e

    # --- Audit trail ---

    def log_activity(
        self,
        action: str,
        description: str,
        entity_type: str,
        entity_id: int,
        tenant_id: int,
        user_id: int,
    ) -> Activity:
        with self._scope() as session:
            entry = Activity(
                action=action,
                description=description,
                entity_type=entity_type,
                entity_id=entity_id,
                tenant_id=tenant_id,
                user_id=user_id,
            )
            session.add(entry)
            session.flush()
            return entry

    def list_activities(
        self,
        tenant_id: int,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Activity]:
        stmt = select(Activity).where(Activity.tenant_id == tenant_id)
        if entity_type is not None:
            stmt = stmt.where(Activity.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(Activity.entity_id == entity_id)
        stmt = stmt.order_by(Activity.id.desc()).limit(limit)
        with self._scope() as session:
            return list(session.execute(stmt).scalars())
