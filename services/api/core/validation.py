"""
Validation utilities for the guest-sharing endpoints.
Ensures required inputs are present and provides clear error messages.
"""
import base64
import binascii
import re
import urllib.parse
from typing import Any, List, Optional

from core.errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DATA_URL_RE = re.compile(r"^data:image/(?:png|jpeg|jpg);base64,(?P<payload>.+)$", re.DOTALL)


def validate_email(email: Optional[str]) -> str:
    """
    Validate the recipient address.

    Raises:
        ValidationError: missing or obviously malformed address

    Returns the address trimmed and lowercased.
    """
    value = (email or "").strip()
    if not value:
        raise ValidationError("Missing email address")
    if not _EMAIL_RE.match(value):
        raise ValidationError(f"Invalid email address: {value}")
    return value.lower()


def validate_selected_pages(pages: Any) -> List[int]:
    """
    Validate the page selection.

    Rules:
    - must be a non-empty list
    - every entry is a positive integer (1-based physical page number)

    Upper bounds are not checked here; the page count is only known once the
    document has been fetched, so out-of-range pages surface at render time.

    Raises:
        ValidationError: empty/missing list or a non-positive entry
    """
    if not pages or not isinstance(pages, (list, tuple)):
        raise ValidationError("No pages selected")

    out: List[int] = []
    for page in pages:
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError(f"Page numbers must be positive integers, got {page!r}")
        out.append(page)
    return out


def validate_pdf_url(url: Optional[str]) -> str:
    """
    Raises:
        ValidationError: missing URL or a non-http(s) scheme
    """
    value = (url or "").strip()
    if not value:
        raise ValidationError("Missing PDF URL")
    scheme = urllib.parse.urlsplit(value).scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError(f"PDF URL must be an http(s) URL, got {value}")
    return value


def decode_page_image(data: str) -> bytes:
    """Decode a `data:image/png;base64,...` URL (or bare base64) to bytes."""
    match = _DATA_URL_RE.match(data.strip())
    payload = match.group("payload") if match else data.strip()
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Invalid page image data: {e}") from e
