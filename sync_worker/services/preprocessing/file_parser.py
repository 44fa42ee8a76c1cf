"""
Attachment text extraction using Unstructured
Plain text is decoded directly; PDFs and Office documents go through
unstructured's partitioners. Extraction is best-effort and never raises.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

MAX_EXTRACT_CHARS = 100_000

TEXT_MIME_TYPES = {"text/plain", "text/markdown", "text/csv", "text/html", "text/xml", "application/json"}

PARSEABLE_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/rtf",
    "application/vnd.oasis.opendocument.text",
    "message/rfc822",
}

MIME_TO_EXT = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/rtf": ".rtf",
    "application/vnd.oasis.opendocument.text": ".odt",
    "message/rfc822": ".eml",
}


def is_parseable_file(mime_type: Optional[str]) -> bool:
    mime_type = (mime_type or "").lower()
    return mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES or mime_type in PARSEABLE_MIME_TYPES


def _partition_file(file_path: str, mime_type: str) -> str:
    """Run unstructured on a file on disk and join the element texts."""
    if mime_type == "application/pdf":
        from unstructured.partition.pdf import partition_pdf
        elements = partition_pdf(
            filename=file_path,
            strategy="fast",
            extract_images_in_pdf=False,
            infer_table_structure=False
        )
    else:
        from unstructured.partition.auto import partition
        elements = partition(filename=file_path, content_type=mime_type)

    return "\n\n".join(str(el) for el in elements if str(el).strip())


def extract_text_from_bytes(content: bytes, mime_type: Optional[str], filename: str) -> Optional[str]:
    """
    Extract text from attachment bytes.

    Args:
        content: Raw file bytes
        mime_type: Content type reported by Graph
        filename: Original filename (used for the temp file extension)

    Returns:
        Extracted text (truncated), or None if the type is unsupported or parsing failed
    """
    mime_type = (mime_type or "").lower()

    if not is_parseable_file(mime_type):
        logger.debug(f"      ⏭️  No extractor for {filename} ({mime_type})")
        return None

    if mime_type.startswith("text/") or mime_type in TEXT_MIME_TYPES:
        text = content.decode("utf-8", errors="replace")
        return text[:MAX_EXTRACT_CHARS] if text.strip() else None

    ext = Path(filename).suffix or MIME_TO_EXT.get(mime_type, ".bin")
    with tempfile.NamedTemporaryFile(delete=False, suffix=ext) as tmp:
        tmp.write(content)
        tmp_path = tmp.name

    try:
        text = _partition_file(tmp_path, mime_type)
        logger.info(f"      📄 Extracted {len(text)} chars from {filename}")
        return text[:MAX_EXTRACT_CHARS] if text.strip() else None
    except Exception as e:
        logger.warning(f"      ⚠️  Text extraction failed for {filename}: {e}")
        return None
    finally:
        try:
            os.unlink(tmp_path)
        except OSError as e:
            logger.warning(f"Failed to delete temp file: {e}")
