"""List-endpoint plumbing: parse list parameters, count, fetch a page and wrap it."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from resource_api.common.encoding import model_to_dict
from resource_api.common.exceptions import ErrorItem, ValidationError
from resource_api.common.list_filters import FilterSpec
from resource_api.common.query_builder import BoundedQuery, QueryRequest
from resource_api.common.validators import (
    MAX_SQL_INTEGER,
    parse_bool,
    query_array,
    query_value,
    query_values,
)
from resource_api.settings import Settings

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 60
MAX_SORT_KEY_LENGTH = 100


MapFn = Callable[[Any], Any]


@dataclass(frozen=True)
class ResponseEnvelope:
    count: int
    entities: list[Any] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"count": self.count, "entities": list(self.entities)}


def parse_query_request(
    params: Mapping[str, Any],
    filter_spec: FilterSpec | None,
    settings: Settings,
) -> QueryRequest:
    """Validate list parameters and filters together.

    Every failure is collected and raised as a single ``ValidationError``.
    """

    errors: list[ErrorItem] = []

    sort_by = _optional_text(params, "sortBy")
    if sort_by is not None and len(sort_by) > MAX_SORT_KEY_LENGTH:
        errors.append(
            ErrorItem(
                field="sortBy",
                message=f"The sortBy field must not exceed {MAX_SORT_KEY_LENGTH} characters.",
                code="string_length",
            )
        )

    descending = _optional_bool(params, "descending", errors)
    only_count = _optional_bool(params, "onlyCount", errors) or False
    page = _optional_int(params, "page", errors, minimum=1) or 1
    items_by_page = _optional_int(params, "itemsByPage", errors, minimum=1)

    exclude_ids: tuple[str, ...] = ()
    raw_ids = query_array(params, "excludeIds")
    if raw_ids is None:
        if query_values(params, "excludeIds"):
            errors.append(
                ErrorItem(
                    field="excludeIds",
                    message="The excludeIds field must be an array.",
                    code="array",
                )
            )
    else:
        exclude_ids = tuple(value.strip() for value in raw_ids if value.strip())

    q = _optional_text(params, "q")
    search_by = _optional_text(params, "searchBy")
    if q is not None:
        if not MIN_QUERY_LENGTH <= len(q) <= MAX_QUERY_LENGTH:
            errors.append(
                ErrorItem(
                    field="q",
                    message=(
                        f"The q field must be between {MIN_QUERY_LENGTH} "
                        f"and {MAX_QUERY_LENGTH} characters."
                    ),
                    code="string_length",
                )
            )
        if search_by is None:
            errors.append(
                ErrorItem(
                    field="searchBy",
                    message="The searchBy field is required when q is present.",
                    code="required_with",
                )
            )

    filters: dict[str, Any] = {}
    if filter_spec is not None:
        filters, filter_errors = filter_spec.validate(params, tz=settings.tzinfo)
        errors.extend(filter_errors)

    if errors:
        raise ValidationError(errors=errors)

    return QueryRequest(
        filters=filters,
        sort_by=sort_by,
        descending=descending,
        page=page,
        items_by_page=items_by_page,
        exclude_ids=exclude_ids,
        only_count=only_count,
        q=q,
        search_by=search_by,
    )


def count_rows(session: Session, statement: Select[Any]) -> int:
    count_stmt = select(func.count()).select_from(statement.order_by(None).subquery())
    return int(session.execute(count_stmt).scalar_one())


def respond(
    session: Session,
    request: QueryRequest,
    query: BoundedQuery,
    map_fn: MapFn | None = None,
) -> ResponseEnvelope:
    """Count first; fetch the page only when rows exist and more than a count was asked for."""

    count = count_rows(session, query.statement)
    if count == 0:
        return ResponseEnvelope(count=0, entities=[])
    if request.only_count:
        return ResponseEnvelope(count=count, entities=[])

    rows: Sequence[Any] = session.execute(query.paginated()).unique().scalars().all()
    mapper = map_fn or model_to_dict
    logger.debug(
        "listing.page",
        extra={"count": count, "page": query.page, "page_size": query.page_size},
    )
    return ResponseEnvelope(count=count, entities=[mapper(row) for row in rows])


def _optional_text(params: Mapping[str, Any], key: str) -> str | None:
    raw = query_value(params, key)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _optional_bool(
    params: Mapping[str, Any], key: str, errors: list[ErrorItem]
) -> bool | None:
    raw = _optional_text(params, key)
    if raw is None:
        return None
    try:
        return parse_bool(raw)
    except ValueError:
        errors.append(
            ErrorItem(field=key, message=f"The {key} field must be true or false.", code="bool")
        )
        return None


def _optional_int(
    params: Mapping[str, Any], key: str, errors: list[ErrorItem], *, minimum: int
) -> int | None:
    raw = _optional_text(params, key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        errors.append(
            ErrorItem(field=key, message=f"The {key} field must be an integer.", code="int")
        )
        return None
    if value < minimum:
        errors.append(
            ErrorItem(
                field=key,
                message=f"The {key} field must be at least {minimum}.",
                code="min",
            )
        )
        return None
    if value > MAX_SQL_INTEGER:
        errors.append(
            ErrorItem(
                field=key,
                message=f"The {key} field must not be greater than {MAX_SQL_INTEGER}.",
                code="max",
            )
        )
        return None
    return value


__all__ = [
    "MapFn",
    "QueryRequest",
    "ResponseEnvelope",
    "count_rows",
    "parse_query_request",
    "respond",
]
