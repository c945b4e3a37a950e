"""Shared JSON encoding helpers for entities and envelopes."""

from __future__ import annotations

import enum
import json
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import inspect


def json_default_encoder(value: Any) -> Any:
    """Best-effort serializer for values the stdlib encoder rejects."""

    # Local import avoids circular dependency at module import time.
    from resource_api.common.schema import BaseSchema

    if isinstance(value, BaseSchema):
        return value.serializable_dict()
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, set):
        return sorted(json_default_encoder(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [json_default_encoder(item) for item in value]
    return str(value)


def _normalize_json(content: Any) -> Any:
    """Normalize structures so keys are JSON-friendly before encoding."""

    from resource_api.common.schema import BaseSchema

    if isinstance(content, BaseSchema):
        return content.serializable_dict()
    if is_dataclass(content) and not isinstance(content, type):
        as_dict = getattr(content, "as_dict", None)
        return _normalize_json(as_dict() if callable(as_dict) else asdict(content))
    if isinstance(content, Mapping):
        return {str(key): _normalize_json(val) for key, val in content.items()}
    if isinstance(content, (list, tuple)):
        return [_normalize_json(item) for item in content]
    return content


def json_dumps(
    content: Any,
    *,
    indent: int | None = None,
    separators: tuple[str, str] | None = (",", ":"),
) -> str:
    """Render JSON using the shared encoder."""

    kwargs: dict[str, Any] = {"default": json_default_encoder}
    if indent is not None:
        kwargs["indent"] = indent
    if separators is not None:
        kwargs["separators"] = separators
    return json.dumps(_normalize_json(content), **kwargs)


def json_bytes(
    content: Any,
    *,
    indent: int | None = None,
    separators: tuple[str, str] | None = (",", ":"),
) -> bytes:
    """Render JSON bytes using the shared encoder."""

    return json_dumps(content, indent=indent, separators=separators).encode("utf-8")


def model_to_dict(entity: Any) -> dict[str, Any]:
    """Return the column attributes of a mapped entity keyed by attribute name."""

    mapper = inspect(entity).mapper
    return {attr.key: getattr(entity, attr.key) for attr in mapper.column_attrs}


__all__ = ["json_bytes", "json_default_encoder", "json_dumps", "model_to_dict"]
