"""Ingestion adapter.

Resolves a source descriptor into one tagged variant the analyzers consume:

- ``TabularRows``: delimited rows (CSV datasets), all values kept as strings
- ``JsonValue``: a parsed JSON document (JSON datasets, webhook payloads)
- ``Documents``: extracted text for PII scanning

Bias analysis accepts CSV and JSON only. PII analysis also accepts plain text,
PDF, DOCX and ZIP batches.
"""
import io
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

import pandas as pd

from ..core.errors import NotFoundError, TransientIOError, ValidationError
from ..core.logger import get_logger
from ..core.schema import AnalysisType, ExtractedDocument, SourceDescriptor, SourceKind
from ..storage.repository import Storage
from .extraction import decode_text, extract_documents, resolve_file_type
from .object_store import ObjectStore

logger = get_logger(__name__)

BIAS_FILE_TYPES = ("csv", "json")


@dataclass(frozen=True)
class TabularRows:
    columns: List[str]
    rows: List[Dict[str, Any]]

    def records(self) -> List[Dict[str, Any]]:
        return self.rows


@dataclass(frozen=True)
class JsonValue:
    value: Any

    def records(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Documents:
    documents: List[ExtractedDocument] = field(default_factory=list)


SourceData = Union[TabularRows, JsonValue, Documents]


def parse_csv(raw: bytes) -> TabularRows:
    """Parse CSV bytes; cells stay strings and blanks stay empty."""
    try:
        df = pd.read_csv(io.BytesIO(raw), dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        return TabularRows(columns=[], rows=[])
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ValidationError(f"Malformed CSV data: {e}", cause=e) from e
    columns = [str(c) for c in df.columns]
    return TabularRows(columns=columns, rows=df.to_dict(orient="records"))


def parse_json(raw: bytes) -> JsonValue:
    try:
        return JsonValue(json.loads(decode_text(raw)))
    except ValueError as e:
        raise ValidationError(f"Malformed JSON data: {e}", cause=e) from e


class IngestionAdapter:
    def __init__(self, storage: Storage, object_store: ObjectStore):
        self.storage = storage
        self.object_store = object_store

    def load_source(
        self,
        source: SourceDescriptor,
        tenant_id: int,
        analysis_type: Union[AnalysisType, str],
    ) -> SourceData:
        analysis_type = AnalysisType(analysis_type)
        if source.kind == SourceKind.DATASET:
            return self._load_dataset(source, tenant_id, analysis_type)
        return self._load_webhook(source, tenant_id, analysis_type)

    def _load_dataset(self, source: SourceDescriptor, tenant_id: int, analysis_type: AnalysisType) -> SourceData:
        if source.dataset_id is None:
            raise ValidationError("Dataset source requires a dataset id")
        dataset = self.storage.get_dataset(source.dataset_id, tenant_id)
        if dataset is None:
            raise NotFoundError(f"Dataset {source.dataset_id} not found")

        file_type = resolve_file_type(dataset.file_type, dataset.file_name)
        if analysis_type == AnalysisType.BIAS_ANALYSIS and file_type not in BIAS_FILE_TYPES:
            raise ValidationError(
                f"Unsupported content type for bias analysis: {dataset.file_type}"
            )
        if file_type is None:
            raise ValidationError(f"Unsupported content type: {dataset.file_type}")

        bucket = source.bucket or dataset.bucket
        key = source.key or dataset.object_key
        try:
            raw = self.object_store.get_object(bucket, key)
        except OSError as e:
            raise TransientIOError(f"Failed to fetch {bucket}/{key}: {e}", cause=e) from e
        logger.info(
            "dataset_fetched",
            dataset_id=dataset.id,
            tenant_id=tenant_id,
            file_type=file_type,
            size=len(raw),
        )

        if analysis_type == AnalysisType.BIAS_ANALYSIS:
            return parse_csv(raw) if file_type == "csv" else parse_json(raw)

        path = f"{bucket}/{key}"
        try:
            documents = extract_documents(raw, file_type, dataset.file_name, path)
        except ValidationError:
            raise
        except Exception as e:
            raise ValidationError(f"Failed to extract text from {dataset.file_name}: {e}", cause=e) from e
        return Documents(documents)

    def _load_webhook(self, source: SourceDescriptor, tenant_id: int, analysis_type: AnalysisType) -> SourceData:
        if source.webhook_payload_id is None:
            raise ValidationError("Webhook source requires a webhook payload id")
        row = self.storage.get_webhook_payload(source.webhook_payload_id, tenant_id)
        if row is None:
            raise NotFoundError(f"Webhook payload {source.webhook_payload_id} not found")

        if analysis_type == AnalysisType.BIAS_ANALYSIS:
            return JsonValue(row.payload)
        name = f"webhook_payload_{row.id}.json"
        return Documents([ExtractedDocument(
            text=json.dumps(row.payload, indent=2, ensure_ascii=False),
            filename=name,
            path=f"webhook/{row.webhook_id}/{name}",
            file_type="json",
        )])
