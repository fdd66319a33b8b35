"""Tests for pattern-based PII detection."""
from databias_pipeline.core.pii import PiiType, detect_pii, detect_pii_in_documents, get_context
from databias_pipeline.core.schema import ExtractedDocument


def _doc(text: str, filename: str = "notes.txt") -> ExtractedDocument:
    return ExtractedDocument(text=text, filename=filename, path=f"uploads/{filename}")


def test_email_detected_once_with_high_confidence():
    findings = detect_pii(_doc("contact: jane.doe@example.com for details"))
    emails = [f for f in findings if f.type == PiiType.EMAIL.value]
    assert len(emails) == 1
    assert emails[0].value == "jane.doe@example.com"
    assert emails[0].confidence >= 0.85
    assert emails[0].filename == "notes.txt"
    assert emails[0].path == "uploads/notes.txt"


def test_finding_offsets_and_redacted_context():
    text = "reach me at jane.doe@example.com today"
    finding = [f for f in detect_pii(_doc(text)) if f.type == PiiType.EMAIL.value][0]
    assert text[finding.start_index:finding.end_index] == "jane.doe@example.com"
    assert "jane.doe@example.com" not in finding.context
    assert "*" * len("jane.doe@example.com") in finding.context
    assert not finding.context.startswith("...")
    assert not finding.context.endswith("...")


def test_context_truncated_with_ellipsis():
    assert get_context("abcdefghij", 4, 6, context_size=2) == "...cd**gh..."
    assert get_context("abcdefghij", 0, 2, context_size=2) == "**cd..."

    text = "x" * 50 + " jane.doe@example.com " + "y" * 50
    finding = [f for f in detect_pii(_doc(text)) if f.type == PiiType.EMAIL.value][0]
    assert finding.context.startswith("...")
    assert finding.context.endswith("...")


def test_structural_patterns():
    text = "ssn 123-45-6789, card 4111111111111111, host 192.168.1.20, born 04/12/1985"
    types = {f.type: f.confidence for f in detect_pii(_doc(text))}
    assert types[PiiType.SSN.value] == 0.95
    assert types[PiiType.CREDIT_CARD.value] == 0.95
    assert types[PiiType.IP_ADDRESS.value] == 0.8
    assert types[PiiType.DATE_OF_BIRTH.value] == 0.7


def test_phone_number_formats():
    text = "call (555) 123-4567 or 555.987.6543"
    phones = [f.value for f in detect_pii(_doc(text)) if f.type == PiiType.PHONE_NUMBER.value]
    assert phones == ["(555) 123-4567", "555.987.6543"]


def test_weak_heuristics_keep_low_confidence():
    findings = detect_pii(_doc("meeting with John Smith tomorrow"))
    names = [f for f in findings if f.type == PiiType.PERSON_NAME.value]
    assert [f.value for f in names] == ["John Smith"]
    assert names[0].confidence <= 0.7


def test_batch_skips_failing_document():
    documents = [
        _doc("write to jane.doe@example.com", "a.txt"),
        {"filename": "broken.txt"},
        {"text": "no personal data here", "filename": "b.txt", "path": "uploads/b.txt"},
    ]
    result = detect_pii_in_documents(documents)
    assert result.total_documents == 3
    assert result.processed_documents == 2
    assert result.pii_detected
    assert [s.filename for s in result.document_summary] == ["a.txt", "b.txt"]
    assert [s.pii_count for s in result.document_summary] == [1, 0]
    assert result.findings_by_type == {"email": 1}


def test_no_pii():
    result = detect_pii_in_documents([_doc("nothing to see here")])
    assert not result.pii_detected
    assert result.findings == []
    assert result.processed_documents == 1
