"""Resource error taxonomy and the FastAPI handlers that render it."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException

from resource_api.common.logging import log_context
from resource_api.common.responses import JSONResponse
from resource_api.common.schema import BaseSchema

_UNHANDLED_LOGGER = logging.getLogger("resource_api.errors")
_HTTP_LOGGER = logging.getLogger("resource_api.http")


class ErrorItem(BaseSchema):
    """A single field-level error message."""

    field: str | None = None
    message: str
    code: str | None = None


class ErrorEnvelope(BaseSchema):
    """Body of every failed response."""

    success: bool = False
    comment: str
    errors: list[ErrorItem] = []


class ResourceError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_comment: str = "Request failed"

    def __init__(
        self,
        comment: str | None = None,
        *,
        errors: Iterable[ErrorItem] | None = None,
        status_code: int | None = None,
    ) -> None:
        self.comment = comment or self.default_comment
        super().__init__(self.comment)
        self.errors = list(errors or [])
        if status_code is not None:
            self.status_code = status_code

    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(comment=self.comment, errors=self.errors)


class ValidationError(ResourceError):
    """Malformed or missing input; the request is rejected before any mutation."""

    status_code = 422
    default_comment = "The given data was invalid."

    @classmethod
    def for_field(cls, field: str, message: str, *, code: str | None = None) -> ValidationError:
        return cls(errors=[ErrorItem(field=field, message=message, code=code)])


class NothingToExportError(ValidationError):
    """Raised when an export request matches no rows."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_comment = "No exportable data found, change parameters?"

    def __init__(self, comment: str | None = None) -> None:
        super().__init__(
            comment,
            errors=[ErrorItem(field="filter", message="No data found", code="empty_export")],
        )


class NotFoundError(ResourceError):
    """Raised when no row matches the requested identifier."""

    status_code = status.HTTP_404_NOT_FOUND
    default_comment = "Entity not found"

    def __init__(self, resource: str, identifier: Any, *, field: str | None = None) -> None:
        lookup = f"{field}={identifier!r}" if field else f"#{identifier}"
        super().__init__(f"{resource} {lookup} not found")
        self.resource = resource
        self.identifier = identifier
        self.field = field


class BusinessRuleError(ResourceError):
    """Raised by pre/post hooks to reject an operation with a client-facing message."""

    status_code = status.HTTP_400_BAD_REQUEST


class PersistenceError(ResourceError):
    """Save or delete failed at the data layer.

    ``comment`` is the redacted, client-facing message; the chained cause keeps
    the underlying exception for the operator log.
    """

    status_code = status.HTTP_400_BAD_REQUEST


class ConfigurationError(ValueError):
    """Invalid resource declaration detected at registration time."""


class FilterSpecError(ConfigurationError):
    """A filter spec names an unknown kind or a field the model does not map."""


class ExportConfigurationError(ConfigurationError):
    """An export spec is malformed (unknown column data type, bad header, ...)."""


def error_items_from_pydantic(errors: Iterable[Mapping[str, Any]]) -> list[ErrorItem]:
    """Convert Pydantic error dicts into error items."""

    items: list[ErrorItem] = []
    for entry in errors:
        loc = entry.get("loc") or ()
        parts = [
            str(part)
            for part in loc
            if part not in {"body", "query", "path", "header", "cookie"}
        ]
        items.append(
            ErrorItem(
                field=".".join(parts) or None,
                message=str(entry.get("msg") or "Invalid value"),
                code=str(entry["type"]) if entry.get("type") else None,
            )
        )
    return items


async def resource_error_handler(request: Request, exc: ResourceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.envelope())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = ValidationError(errors=error_items_from_pydantic(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.envelope())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render framework HTTP errors (404 routes, 405, ...) in the error envelope.

    5xx responses are logged at ERROR level with structured metadata.
    """
    if exc.status_code >= 500:
        _HTTP_LOGGER.error(
            "http_exception",
            extra=log_context(
                path=str(request.url.path),
                method=request.method,
                status_code=exc.status_code,
                detail=exc.detail,
            ),
        )
    comment = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorEnvelope(comment=comment),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler: HTTP 500 with a generic body and an ERROR log with stack trace."""
    _UNHANDLED_LOGGER.exception(
        "unhandled_exception",
        extra=log_context(
            path=str(request.url.path),
            method=request.method,
            exception_type=type(exc).__name__,
        ),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorEnvelope(comment="Internal server error"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ResourceError, resource_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    "BusinessRuleError",
    "ConfigurationError",
    "ErrorEnvelope",
    "ErrorItem",
    "ExportConfigurationError",
    "FilterSpecError",
    "NotFoundError",
    "NothingToExportError",
    "PersistenceError",
    "ResourceError",
    "ValidationError",
    "error_items_from_pydantic",
    "register_exception_handlers",
    "unhandled_exception_handler",
]
