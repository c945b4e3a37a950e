"""Compose id exclusion, filters, search, sorting and pagination into one bounded query."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Select, inspect
from sqlalchemy.orm import Mapper
from sqlalchemy.sql.elements import ColumnElement

from resource_api.common.casing import FieldCase, convert_case
from resource_api.common.exceptions import ConfigurationError, ErrorItem, ValidationError
from resource_api.common.list_filters import BoundFilterSpec, FilterSpec, coerce_to_column
from resource_api.common.validators import LIKE_ESCAPE, MAX_SQL_INTEGER, escape_like
from resource_api.settings import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


@dataclass(frozen=True)
class QueryRequest:
    """Validated list parameters for one request."""

    filters: Mapping[str, Any] = field(default_factory=dict)
    sort_by: str | None = None
    descending: bool | None = None
    page: int = 1
    items_by_page: int | None = None
    exclude_ids: tuple[str, ...] = ()
    only_count: bool = False
    q: str | None = None
    search_by: str | None = None


@dataclass(frozen=True)
class BoundedQuery:
    """A filtered, sorted statement plus the page window to apply to it.

    ``statement`` carries no LIMIT/OFFSET so it can be counted and exported;
    :meth:`paginated` applies the window.
    """

    statement: Select[Any]
    page: int
    page_size: int
    offset: int
    options: tuple[Any, ...] = ()

    def paginated(self) -> Select[Any]:
        stmt = self.statement.limit(self.page_size).offset(self.offset)
        if self.options:
            stmt = stmt.options(*self.options)
        return stmt


def primary_key_column(model: type[Any]) -> ColumnElement[Any]:
    """Return the table-qualified primary-key column; composite keys are rejected."""

    mapper: Mapper[Any] = inspect(model)
    keys = mapper.primary_key
    if len(keys) != 1:
        raise ConfigurationError(
            f"{model.__name__} must have exactly one primary-key column (found {len(keys)})"
        )
    return keys[0]


def resolve_sort_column(
    model: type[Any],
    sort_by: str,
    *,
    field_case: FieldCase | str | None = FieldCase.SNAKE,
    sort_fields: Sequence[str] | None = None,
) -> ColumnElement[Any]:
    """Map a client sort key onto an allowed column or raise ``ValidationError``."""

    name = convert_case(sort_by, field_case) if field_case else sort_by.strip()
    columns = inspect(model).columns
    allowed = list(sort_fields) if sort_fields else list(columns.keys())
    if name not in allowed or name not in columns:
        raise ValidationError.for_field(
            "sortBy",
            f"Unsupported sort field '{sort_by}'. Allowed: {', '.join(sorted(allowed))}",
            code="sort_field",
        )
    return columns[name]


def build_query(
    base: Select[Any],
    model: type[Any],
    filter_spec: FilterSpec | BoundFilterSpec | None,
    request: QueryRequest,
    *,
    sort_fields: Sequence[str] | None = None,
    field_case: FieldCase | str | None = FieldCase.SNAKE,
    search_fields: Sequence[str] = (),
    default_page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE,
    options: Sequence[Any] = (),
) -> BoundedQuery:
    pk = primary_key_column(model)
    stmt = base

    if request.exclude_ids:
        stmt = stmt.where(pk.not_in(_coerce_ids(pk, request.exclude_ids)))

    if filter_spec is not None and request.filters:
        bound = filter_spec if isinstance(filter_spec, BoundFilterSpec) else filter_spec.bind(model)
        predicates = bound.predicates(request.filters)
        if predicates:
            stmt = stmt.where(*predicates)

    if request.q:
        stmt = stmt.where(_search_predicate(model, request, search_fields))

    if request.sort_by:
        column = resolve_sort_column(
            model, request.sort_by, field_case=field_case, sort_fields=sort_fields
        )
        descending = True if request.descending is None else request.descending
        order = [column.desc() if descending else column.asc()]
        if column is not pk:
            order.append(pk.desc() if descending else pk.asc())
        stmt = stmt.order_by(*order)
    else:
        stmt = stmt.order_by(pk.asc())

    requested = request.items_by_page or default_page_size
    page_size = max(1, min(requested, max_page_size))
    # Keep OFFSET inside a signed 64-bit integer; such pages are empty anyway.
    page = min(max(1, request.page), MAX_SQL_INTEGER // page_size)
    return BoundedQuery(
        statement=stmt,
        page=page,
        page_size=page_size,
        offset=(page - 1) * page_size,
        options=tuple(options),
    )


def _coerce_ids(pk: ColumnElement[Any], raw_ids: Sequence[str]) -> list[Any]:
    coerced: list[Any] = []
    invalid: list[ErrorItem] = []
    for index, raw in enumerate(raw_ids):
        try:
            coerced.append(coerce_to_column(pk, raw))
        except ValueError:
            invalid.append(
                ErrorItem(
                    field=f"excludeIds.{index}",
                    message=f"'{raw}' is not a valid identifier.",
                    code="invalid_id",
                )
            )
    if invalid:
        raise ValidationError(errors=invalid)
    return coerced


def _search_predicate(
    model: type[Any], request: QueryRequest, search_fields: Sequence[str]
) -> ColumnElement[bool]:
    columns = inspect(model).columns
    if request.search_by not in search_fields or request.search_by not in columns:
        allowed = ", ".join(search_fields) or "none"
        raise ValidationError.for_field(
            "searchBy",
            f"Unsupported search field '{request.search_by}'. Allowed: {allowed}",
            code="search_field",
        )
    column = columns[request.search_by]
    return column.ilike(f"%{escape_like(request.q or '')}%", escape=LIKE_ESCAPE)


__all__ = [
    "BoundedQuery",
    "QueryRequest",
    "build_query",
    "primary_key_column",
    "resolve_sort_column",
]
