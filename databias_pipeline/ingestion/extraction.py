"""Text extraction for PII scanning.

Turns raw document bytes into ``ExtractedDocument`` objects. PDF text comes
from pypdf, DOCX from the document XML inside the archive; JSON is
re-serialized with indentation so nested values land on their own lines. A ZIP
archive is treated as a batch: members that fail to extract are logged and
skipped.
"""
import io
import json
import os
import re
import zipfile
from typing import Callable, Dict, List, Optional
from xml.etree import ElementTree

from pypdf import PdfReader

from ..core.errors import ValidationError
from ..core.logger import get_logger
from ..core.schema import ExtractedDocument

logger = get_logger(__name__)

CONTENT_TYPES: Dict[str, str] = {
    "text/csv": "csv",
    "application/csv": "csv",
    "application/json": "json",
    "text/json": "json",
    "text/plain": "txt",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/zip": "zip",
    "application/x-zip-compressed": "zip",
}

EXTENSIONS: Dict[str, str] = {
    ".csv": "csv",
    ".json": "json",
    ".txt": "txt",
    ".pdf": "pdf",
    ".docx": "docx",
    ".zip": "zip",
}

_W_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"


def resolve_file_type(content_type: Optional[str], filename: Optional[str] = None) -> Optional[str]:
    """Short file type from a content type, falling back to the file extension."""
    if content_type:
        base = content_type.split(";")[0].strip().lower()
        if base in CONTENT_TYPES:
            return CONTENT_TYPES[base]
        if base in EXTENSIONS.values():
            return base
    if filename:
        return EXTENSIONS.get(os.path.splitext(filename)[1].lower())
    return None


def decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def extract_pdf(raw: bytes, filename: str, path: str) -> ExtractedDocument:
    reader = PdfReader(io.BytesIO(raw))
    parts = [page.extract_text() or "" for page in reader.pages]
    info = {str(k).lstrip("/"): str(v) for k, v in (reader.metadata or {}).items()}
    return ExtractedDocument(
        text="\n".join(parts),
        filename=filename,
        path=path,
        file_type="pdf",
        metadata={"page_count": len(reader.pages), "info": info},
    )


def extract_docx(raw: bytes, filename: str, path: str) -> ExtractedDocument:
    with zipfile.ZipFile(io.BytesIO(raw)) as archive:
        xml = archive.read("word/document.xml")
    root = ElementTree.fromstring(xml)
    paragraphs = []
    for para in root.iter(f"{_W_NS}p"):
        paragraphs.append("".join(node.text or "" for node in para.iter(f"{_W_NS}t")))
    return ExtractedDocument(
        text="\n".join(paragraphs),
        filename=filename,
        path=path,
        file_type="docx",
        metadata={"paragraphs": len(paragraphs)},
    )


def extract_json(raw: bytes, filename: str, path: str) -> ExtractedDocument:
    value = json.loads(decode_text(raw))
    structure = list(value.keys()) if isinstance(value, dict) else []
    return ExtractedDocument(
        text=json.dumps(value, indent=2, ensure_ascii=False),
        filename=filename,
        path=path,
        file_type="json",
        metadata={"structure": structure},
    )


def _plain(file_type: str) -> Callable[[bytes, str, str], ExtractedDocument]:
    def extract(raw: bytes, filename: str, path: str) -> ExtractedDocument:
        return ExtractedDocument(text=decode_text(raw), filename=filename, path=path, file_type=file_type)
    return extract


EXTRACTORS: Dict[str, Callable[[bytes, str, str], ExtractedDocument]] = {
    "pdf": extract_pdf,
    "docx": extract_docx,
    "json": extract_json,
    "txt": _plain("txt"),
    "csv": _plain("csv"),
}


def extract_document(raw: bytes, file_type: str, filename: str, path: str) -> ExtractedDocument:
    extractor = EXTRACTORS.get(file_type)
    if extractor is None:
        raise ValidationError(f"Unsupported file type for text extraction: {file_type}")
    return extractor(raw, filename, path)


def extract_archive(raw: bytes, path: str) -> List[ExtractedDocument]:
    """Extract every supported member of a ZIP archive.

    Unsupported members are ignored; members that fail to parse are logged and
    skipped so one bad file does not abort the batch.
    """
    documents: List[ExtractedDocument] = []
    try:
        archive = zipfile.ZipFile(io.BytesIO(raw))
    except zipfile.BadZipFile as e:
        raise ValidationError(f"Invalid ZIP archive: {path}", cause=e) from e
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            file_type = EXTENSIONS.get(os.path.splitext(info.filename)[1].lower())
            if file_type is None or file_type == "zip":
                continue
            member_path = f"{path}/{info.filename}"
            try:
                documents.append(extract_document(
                    archive.read(info),
                    file_type,
                    os.path.basename(info.filename),
                    member_path,
                ))
            except Exception as e:
                logger.warning("document_extraction_skipped", path=member_path, error=str(e))
    return documents


def extract_documents(raw: bytes, file_type: str, filename: str, path: str) -> List[ExtractedDocument]:
    if file_type == "zip":
        return extract_archive(raw, path)
    return [extract_document(raw, file_type, filename, path)]


def safe_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", os.path.basename(name)) or "upload"
