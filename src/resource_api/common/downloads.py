"""``Content-Disposition`` values for file downloads."""

from __future__ import annotations

import re
import unicodedata
from urllib.parse import quote

# Printable ASCII minus characters that break a quoted header parameter.
_UNSAFE_FALLBACK = re.compile(r'[^\x20-\x7e]|["\\;:%]')


def build_content_disposition(filename: str, *, default: str = "download") -> str:
    """Attachment header with an ASCII ``filename`` and, when that differs, ``filename*``."""
    name = "".join(ch for ch in filename if not unicodedata.category(ch).startswith("C"))
    name = name.strip() or default
    fallback = _UNSAFE_FALLBACK.sub("_", name).strip("_ ")[:255] or default
    if fallback == name:
        return f'attachment; filename="{name}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


__all__ = ["build_content_disposition"]
