# src/press3/util/ids.py
from __future__ import annotations

"""Identity, blob id and page path helpers.

Validation is lightweight and fail-closed:
  - Addresses are "0x" + 1..64 hex digits; normalized form is lowercase and
    left-padded to 64 hex digits.
  - Walrus blob ids are URL-safe base64 without padding (43 chars for a
    32-byte digest).
  - Page paths are absolute, "/"-separated, compared case-sensitively.
  - Blobs are tagged with a MIME type guessed from the page path.
"""

import mimetypes
import re
from dataclasses import dataclass
from typing import List

from press3.errors import ValidationError

ADDRESS_HEX_LEN = 64
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
_BLOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


@dataclass(frozen=True)
class IdValidation:
    ok: bool
    reason: str
    value: str


def validate_address(addr: str) -> IdValidation:
    a = (addr or "").strip() if isinstance(addr, str) else ""
    if not a:
        return IdValidation(False, "missing_address", "")
    if not _ADDRESS_RE.match(a):
        return IdValidation(False, "invalid_address_format", a)
    return IdValidation(True, "ok", "0x" + a[2:].lower().rjust(ADDRESS_HEX_LEN, "0"))


def normalize_address(addr: str) -> str:
    v = validate_address(addr)
    if not v.ok:
        raise ValidationError(reason=v.reason, details=addr)
    return v.value


def validate_blob_id(blob_id: str) -> IdValidation:
    b = (blob_id or "").strip() if isinstance(blob_id, str) else ""
    if not b:
        return IdValidation(False, "missing_blob_id", "")
    if not _BLOB_ID_RE.match(b):
        return IdValidation(False, "invalid_blob_id_format", b)
    return IdValidation(True, "ok", b)


def normalize_path(value: str) -> str:
    """Map a relative or OS-specific path to the registry's absolute form."""
    normalized = "/".join(str(value or "").split("\\"))
    if not normalized or normalized == ".":
        return "/"
    return normalized if normalized.startswith("/") else f"/{normalized}"


def require_path(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(reason="empty_path", details=value)
    return normalize_path(value.strip())


def parse_address_list(raw: str | None) -> List[str]:
    """Split a comma-separated address list; blanks are dropped, entries are not validated."""
    if not raw:
        return []
    return [a.strip() for a in str(raw).split(",") if a.strip()]


def short_id(value: str, n: int = 12) -> str:
    return f"{value[:n]}..." if len(value) > n else value


def content_type_for(path: str) -> str:
    return mimetypes.guess_type(str(path or ""))[0] or DEFAULT_CONTENT_TYPE
