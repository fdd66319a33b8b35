"""Pattern-based PII detection.

Each detector is an independent regular expression with a fixed confidence
weight. Structurally strong patterns (email, credit card, SSN) score high;
name, address, passport and license patterns are deliberately low because they
match plenty of ordinary text. Detection is heuristic, not a compliance
guarantee.
"""
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .config import settings
from .logger import get_logger
from .schema import DocumentSummary, ExtractedDocument, PiiDetectionResult, PiiFinding

logger = get_logger(__name__)


class PiiType(str, Enum):
    EMAIL = "email"
    PHONE_NUMBER = "phone_number"
    CREDIT_CARD = "credit_card"
    SSN = "social_security_number"
    IP_ADDRESS = "ip_address"
    US_ADDRESS = "us_address"
    PASSPORT_NUMBER = "passport_number"
    DRIVING_LICENSE = "driving_license"
    PERSON_NAME = "person_name"
    DATE_OF_BIRTH = "date_of_birth"


@dataclass(frozen=True)
class PiiPattern:
    type: PiiType
    pattern: "re.Pattern[str]"
    confidence: float


PII_PATTERNS: List[PiiPattern] = [
    PiiPattern(
        PiiType.EMAIL,
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        0.9,
    ),
    # US formats: 555-123-4567, (555) 123-4567, +1 555.123.4567
    PiiPattern(
        PiiType.PHONE_NUMBER,
        re.compile(r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        0.85,
    ),
    PiiPattern(
        PiiType.CREDIT_CARD,
        re.compile(
            r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13}"
            r"|3(?:0[0-5]|[68][0-9])[0-9]{11}|6(?:011|5[0-9]{2})[0-9]{12}"
            r"|(?:2131|1800|35\d{3})\d{11})\b"
        ),
        0.95,
    ),
    PiiPattern(
        PiiType.SSN,
        re.compile(r"\b(?!000|666|9\d{2})(?:[0-8]\d{2})([-\s]?)(?!00)\d\d\1(?!0000)\d{4}\b"),
        0.95,
    ),
    PiiPattern(
        PiiType.IP_ADDRESS,
        re.compile(
            r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
            r"|\b(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}\b"
        ),
        0.8,
    ),
    PiiPattern(
        PiiType.US_ADDRESS,
        re.compile(r"\b\d{1,5}\s[A-Z][a-z]+(?:\s[A-Z][a-z]+)*,\s[A-Z]{2}\s\d{5}(?:-\d{4})?\b"),
        0.7,
    ),
    PiiPattern(PiiType.PASSPORT_NUMBER, re.compile(r"\b[A-Z]{1,2}[0-9]{6,9}\b"), 0.7),
    PiiPattern(PiiType.DRIVING_LICENSE, re.compile(r"\b[A-Z][0-9]{3,8}\b"), 0.6),
    PiiPattern(PiiType.PERSON_NAME, re.compile(r"\b[A-Z][a-z]+\s[A-Z][a-z]+\b"), 0.5),
    PiiPattern(
        PiiType.DATE_OF_BIRTH,
        re.compile(r"\b(?:0[1-9]|1[0-2])/(?:0[1-9]|[12]\d|3[01])/(?:19|20)\d{2}\b"),
        0.7,
    ),
]


def get_context(text: str, start: int, end: int, context_size: Optional[int] = None) -> str:
    """Surrounding text with the match replaced by asterisks.

    An ellipsis marks each side where the window was cut short of the text
    boundary.
    """
    size = settings.PII_CONTEXT_CHARS if context_size is None else context_size
    ctx_start = max(0, start - size)
    ctx_end = min(len(text), end + size)
    context = text[ctx_start:start] + "*" * (end - start) + text[end:ctx_end]
    if ctx_start > 0:
        context = "..." + context
    if ctx_end < len(text):
        context = context + "..."
    return context


def detect_pii(
    document: ExtractedDocument,
    patterns: Sequence[PiiPattern] = PII_PATTERNS,
) -> List[PiiFinding]:
    findings: List[PiiFinding] = []
    text = document.text
    for detector in patterns:
        for match in detector.pattern.finditer(text):
            start, end = match.start(), match.end()
            findings.append(PiiFinding(
                type=detector.type.value,
                value=match.group(0),
                confidence=detector.confidence,
                path=document.path,
                filename=document.filename,
                start_index=start,
                end_index=end,
                context=get_context(text, start, end),
            ))
    return findings


def detect_pii_in_documents(
    documents: Iterable[Union[ExtractedDocument, Dict[str, Any]]],
    patterns: Sequence[PiiPattern] = PII_PATTERNS,
) -> PiiDetectionResult:
    """Scan a batch of documents; a failing document is logged and skipped."""
    all_findings: List[PiiFinding] = []
    summary: List[DocumentSummary] = []
    total = 0
    processed = 0

    for raw in documents:
        total += 1
        try:
            document = raw if isinstance(raw, ExtractedDocument) else ExtractedDocument.model_validate(raw)
            findings = detect_pii(document, patterns)
        except Exception as e:
            name = getattr(raw, "filename", None) or (raw.get("filename") if isinstance(raw, dict) else None)
            logger.warning("pii_document_skipped", filename=name, error=str(e))
            continue
        all_findings.extend(findings)
        summary.append(DocumentSummary(
            filename=document.filename,
            file_type=document.file_type,
            pii_count=len(findings),
        ))
        processed += 1

    by_type = Counter(f.type for f in all_findings)
    logger.info(
        "pii_scan_finished",
        total_documents=total,
        processed_documents=processed,
        findings=len(all_findings),
    )
    return PiiDetectionResult(
        findings=all_findings,
        total_documents=total,
        processed_documents=processed,
        pii_detected=bool(all_findings),
        document_summary=summary,
        findings_by_type=dict(by_type),
    )
