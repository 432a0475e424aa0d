"""
Security utilities for the PDF tool suite

Provides centralized security functions shared across all tool mixins and
the HTTP layer:
- Upload validation
- Path traversal protection for result downloads
- Error message sanitization
- Admin token comparison
"""

import json
import logging
import re
import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)

# Security Configuration
MAX_PDF_SIZE = 50 * 1024 * 1024  # 50MB
MAX_FILES = 20
MAX_JSON_SIZE = 100000  # 100KB for the edits parameter
MAX_ERROR_LENGTH = 500

_RESULT_FILENAME = re.compile(r'^[A-Za-z0-9_-]+\.[A-Za-z0-9]+$')

# Filesystem paths, premium codes and credential assignments
_REDACTED_PATTERNS = (
    re.compile(r"(?:/[\w.-]+){2,}/?"),
    re.compile(r"PREMIUM_\d+_[A-Z0-9]+"),
    re.compile(r"(?:password|token|secret)\s*[=:]\s*\S+", re.IGNORECASE),
)


def validate_pdf_bytes(filename: str, data: bytes, max_size: int = MAX_PDF_SIZE) -> bytes:
    """
    Validate an uploaded PDF.

    Raises:
        InvalidInput: If the file is empty, too large or lacks a PDF header
    """
    if not data:
        raise InvalidInput(f"Uploaded file is empty: {filename}")

    if len(data) > max_size:
        raise InvalidInput(
            f"File too large. Maximum size is {max_size // (1024 * 1024)}MB.",
            code="FILE_TOO_LARGE",
        )

    # Header only; damaged bodies are accepted for repair
    if b'%PDF-' not in data[:1024]:
        raise InvalidInput(f"Only PDF files are allowed: {filename}")

    return data


def validate_file_count(count: int, max_files: int = MAX_FILES) -> None:
    if count == 0:
        raise InvalidInput("No files uploaded")
    if count > max_files:
        raise InvalidInput(f"Too many files. Maximum is {max_files} files.", code="TOO_MANY_FILES")


def resolve_result_path(output_dir: Path, filename: str) -> Path:
    """
    Resolve a download filename inside ``output_dir``.

    Raises:
        NotFound: If the name is malformed, escapes the directory or is missing
    """
    if not filename or len(filename) > 255 or not _RESULT_FILENAME.match(filename):
        raise NotFound("File not found")

    base = output_dir.resolve()
    path = (base / filename).resolve()
    try:
        path.relative_to(base)
    except ValueError:
        raise NotFound("File not found")

    if not path.is_file():
        raise NotFound("File not found")
    return path


def parse_page_ranges(range_string: str, total_pages: int) -> List[List[int]]:
    """
    Parse "1-3,5,8-9" into groups of 0-based page indices.

    Out-of-range or malformed parts are skipped.
    """
    if len(range_string) > 1000:
        raise InvalidInput("Page ranges parameter too long")

    ranges = []
    for part in (p.strip() for p in range_string.split(',')):
        if not part:
            continue
        if '-' in part:
            start_text, _, end_text = part.partition('-')
            try:
                start, end = int(start_text.strip()), int(end_text.strip())
            except ValueError:
                continue
            if 1 <= start <= end <= total_pages:
                ranges.append(list(range(start - 1, end)))
        else:
            try:
                page = int(part)
            except ValueError:
                continue
            if 1 <= page <= total_pages:
                ranges.append([page - 1])
    return ranges


def validate_json_parameter(json_str: Optional[str], max_size: int = MAX_JSON_SIZE) -> Dict[str, Any]:
    """
    Safely parse and validate a JSON form parameter.

    Raises:
        InvalidInput: If JSON is invalid, too large or not an object
    """
    if not json_str:
        return {}

    if len(json_str) > max_size:
        raise InvalidInput(f"JSON parameter too large: {len(json_str)} > {max_size} bytes")

    try:
        value = json.loads(json_str)
    except ValueError as e:
        raise InvalidInput(f"Invalid JSON parameter: {e}")

    if not isinstance(value, dict):
        raise InvalidInput("JSON parameter must be an object")
    return value


def check_admin_token(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset server token disables admin access"""
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


def sanitize_error_message(error_msg: str) -> str:
    """Strip filesystem paths, premium codes and credentials from a message shown to clients"""
    if not error_msg:
        return "Unknown error occurred"

    cleaned = error_msg
    for pattern in _REDACTED_PATTERNS:
        cleaned = pattern.sub("[REDACTED]", cleaned)

    if len(cleaned) > MAX_ERROR_LENGTH:
        cleaned = cleaned[:MAX_ERROR_LENGTH] + "... [truncated]"
    return cleaned
