"""JSON responses that understand resource-api schemas."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from starlette.background import BackgroundTask
from starlette.responses import Response

from resource_api.common.encoding import json_bytes


class JSONResponse(Response):
    """Response class that renders BaseSchema instances and ORM-derived payloads."""

    media_type = "application/json"

    def __init__(
        self,
        content: Any = None,
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
        media_type: str | None = None,
        background: BackgroundTask | None = None,
    ) -> None:
        super().__init__(
            content=content,
            status_code=status_code,
            headers=dict(headers or {}),
            media_type=media_type or self.media_type,
            background=background,
        )

    def render(self, content: Any) -> bytes:  # noqa: D401 - standard Starlette signature
        if content is None:
            return b"null"
        return json_bytes(content)


def success_entity(entity: Any) -> dict[str, Any]:
    return {"success": True, "entity": entity}


def success_deleted(identifier: Any, entity: Any) -> dict[str, Any]:
    return {"success": True, "id": identifier, "deletedEntity": entity}


__all__ = ["JSONResponse", "success_deleted", "success_entity"]
