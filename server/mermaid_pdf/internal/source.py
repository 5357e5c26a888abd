"""
Diagram source helpers

Pulls Mermaid source out of pasted text or uploaded markdown and derives the
name the resulting PDF is downloaded under.
"""

import re
import urllib.parse
from typing import Optional

from mermaid_pdf.errors import InvalidUploadError

MERMAID_BLOCK_PATTERN = re.compile(r"```mermaid\s*([\s\S]*?)\s*```")
UPLOAD_SUFFIX_PATTERN = re.compile(r"\.(mmd|md)$", re.IGNORECASE)

DEFAULT_DOWNLOAD_NAME = "mermaid-diagram"


def extract_diagram_source(text: str) -> str:
    """
    Extract Mermaid source from raw text.

    If the text contains a ```mermaid fenced block, only the trimmed contents
    of the first such block are used. Otherwise the text is returned as is.

    Args:
        text: Pasted code or uploaded file contents

    Returns:
        Diagram source
    """
    match = MERMAID_BLOCK_PATTERN.search(text)
    if match and match.group(1):
        return match.group(1).strip()
    return text


def validate_upload_name(filename: Optional[str]) -> None:
    """Reject uploads that are not .md or .mmd files"""
    if not filename or not UPLOAD_SUFFIX_PATTERN.search(filename):
        raise InvalidUploadError("Please upload a .md or .mmd mermaid file.")


def decode_upload(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise InvalidUploadError(f"Uploaded file is not valid UTF-8 text: {e}")


def download_filename(upload_name: Optional[str] = None) -> str:
    """
    Generate a safe PDF filename from the uploaded file's name.

    Args:
        upload_name: Original upload filename, if any

    Returns:
        Filename ending in .pdf
    """
    base = UPLOAD_SUFFIX_PATTERN.sub("", upload_name or "")
    # Drop any client-side directory components
    base = re.split(r"[\\/]", base)[-1]

    safe_name = re.sub(r'[<>:"|?*\x00-\x1f]', "_", base).strip()

    if len(safe_name) > 50:
        safe_name = safe_name[:50]

    if not safe_name:
        safe_name = DEFAULT_DOWNLOAD_NAME

    return f"{safe_name}.pdf"


def content_disposition(filename: str) -> str:
    """Build an attachment Content-Disposition header value"""
    # Plain parameter for old clients, RFC 5987 form for non-ASCII names
    ascii_name = filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    encoded_filename = urllib.parse.quote(filename)
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{encoded_filename}"
