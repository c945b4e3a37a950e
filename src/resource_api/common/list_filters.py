"""Declarative field filters: rule sets, validation and SQL predicates.

A resource declares a :class:`FilterSpec` mapping field names to a
:class:`FilterKind`. Each kind owns its request parameters:

* ``bool`` / ``string`` read ``field``;
* ``select`` reads ``field[]`` (or ``field[0]``, ``field[1]`` ...);
* ``num_range`` / ``date_range`` read ``field_min`` and ``field_max``.

Validation is all-or-nothing: every rule is checked and the failures are
returned together so the caller can reject the request before any query runs.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any

from sqlalchemy import Date, DateTime, inspect
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import TypeDecorator

from resource_api.common.exceptions import ErrorItem, FilterSpecError, ValidationError
from resource_api.common.validators import (
    LIKE_ESCAPE,
    escape_like,
    fits_sql_integer,
    parse_bool,
    parse_day_bound,
    parse_number,
    query_array,
    query_value,
    query_values,
)

MAX_SELECT_ITEMS = 20
SELECT_TOKEN_PATTERN = re.compile(r"^[\w-]{1,100}$")
STRING_MIN_LENGTH = 3
STRING_MAX_LENGTH = 255


class FilterKind(str, Enum):
    BOOL = "bool"
    STRING = "string"
    SELECT = "select"
    NUM_RANGE = "num_range"
    DATE_RANGE = "date_range"


@dataclass(frozen=True)
class FilterRule:
    """Validation rule for one request parameter."""

    param: str
    field: str
    kind: FilterKind
    constraint: str


@dataclass(frozen=True)
class RangeBounds:
    lower: Any | None = None
    upper: Any | None = None


class FilterSpec(Mapping[str, FilterKind]):
    """Ordered, immutable ``field -> FilterKind`` declaration."""

    def __init__(
        self,
        fields: Mapping[str, FilterKind | str] | None = None,
        /,
        **kwargs: FilterKind | str,
    ) -> None:
        declared: dict[str, FilterKind] = {}
        for name, kind in [*(fields or {}).items(), *kwargs.items()]:
            try:
                declared[name] = FilterKind(kind)
            except ValueError as exc:
                allowed = ", ".join(item.value for item in FilterKind)
                raise FilterSpecError(
                    f"Unknown filter kind {kind!r} for field {name!r}. Allowed: {allowed}"
                ) from exc
        self._fields = MappingProxyType(declared)

    def __getitem__(self, name: str) -> FilterKind:
        return self._fields[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        body = ", ".join(f"{name}={kind.value}" for name, kind in self._fields.items())
        return f"FilterSpec({body})"

    def rules(self) -> tuple[FilterRule, ...]:
        rules: list[FilterRule] = []
        for name, kind in self._fields.items():
            if kind is FilterKind.BOOL:
                rules.append(FilterRule(name, name, kind, "boolean"))
            elif kind is FilterKind.STRING:
                rules.append(
                    FilterRule(name, name, kind, f"string:{STRING_MIN_LENGTH}-{STRING_MAX_LENGTH}")
                )
            elif kind is FilterKind.SELECT:
                rules.append(
                    FilterRule(
                        f"{name}[]",
                        name,
                        kind,
                        f"array:max={MAX_SELECT_ITEMS};token=[\\w-]{{1,100}}",
                    )
                )
            else:
                value_type = "number" if kind is FilterKind.NUM_RANGE else "date"
                rules.append(FilterRule(f"{name}_min", name, kind, value_type))
                rules.append(FilterRule(f"{name}_max", name, kind, f"{value_type};gte={name}_min"))
        return tuple(rules)

    def validate(
        self,
        params: Mapping[str, Any],
        *,
        tz: tzinfo = UTC,
    ) -> tuple[dict[str, Any], list[ErrorItem]]:
        """Return ``(values, errors)`` for every declared field present in ``params``."""

        values: dict[str, Any] = {}
        errors: list[ErrorItem] = []
        for name, kind in self._fields.items():
            if kind is FilterKind.BOOL:
                value = _validate_bool(params, name, errors)
            elif kind is FilterKind.STRING:
                value = _validate_string(params, name, errors)
            elif kind is FilterKind.SELECT:
                value = _validate_select(params, name, errors)
            elif kind is FilterKind.NUM_RANGE:
                value = _validate_range(params, name, errors, _parse_number_bound, "number")
            else:
                value = _validate_range(
                    params,
                    name,
                    errors,
                    lambda raw, end: parse_day_bound(raw, tz, end=end),
                    "date",
                )
            if value is not None:
                values[name] = value
        return values, errors

    def parse(self, params: Mapping[str, Any], *, tz: tzinfo = UTC) -> dict[str, Any]:
        values, errors = self.validate(params, tz=tz)
        if errors:
            raise ValidationError(errors=errors)
        return values

    def bind(self, model: type[Any]) -> BoundFilterSpec:
        """Resolve every field to a mapped column of ``model``."""

        columns = inspect(model).columns
        resolved: dict[str, ColumnElement[Any]] = {}
        for name in self._fields:
            column = columns[name] if name in columns else None
            if column is None:
                raise FilterSpecError(
                    f"Filter field {name!r} is not a mapped column of {model.__name__}"
                )
            resolved[name] = column
        return BoundFilterSpec(spec=self, model=model, columns=MappingProxyType(resolved))

    def predicates(self, model: type[Any], values: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        return self.bind(model).predicates(values)


@dataclass(frozen=True)
class BoundFilterSpec:
    spec: FilterSpec
    model: type[Any]
    columns: Mapping[str, ColumnElement[Any]]

    def predicates(self, values: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        """Build predicates in field-declaration order; absent fields contribute nothing."""

        predicates: list[ColumnElement[bool]] = []
        errors: list[ErrorItem] = []
        for name, kind in self.spec.items():
            if name not in values:
                continue
            column = self.columns[name]
            value = values[name]
            if kind is FilterKind.BOOL:
                predicates.append(column == value)
            elif kind is FilterKind.STRING:
                predicates.append(column.ilike(f"%{escape_like(value)}%", escape=LIKE_ESCAPE))
            elif kind is FilterKind.SELECT:
                try:
                    tokens = [coerce_to_column(column, token) for token in value]
                except ValueError:
                    errors.append(
                        ErrorItem(
                            field=f"{name}[]",
                            message=f"The {name} field contains an invalid value.",
                            code="invalid_value",
                        )
                    )
                    continue
                predicates.append(column.in_(tokens))
            else:
                if value.lower is not None:
                    predicates.append(column >= _storage_value(column, value.lower))
                if value.upper is not None:
                    predicates.append(column <= _storage_value(column, value.upper))
        if errors:
            raise ValidationError(errors=errors)
        return predicates


def coerce_to_column(column: ColumnElement[Any], raw: Any) -> Any:
    """Coerce ``raw`` to the column's Python type; ``ValueError`` when it cannot be."""

    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw
    if python_type is bool:
        return parse_bool(raw)
    if isinstance(raw, python_type):
        value = raw
    else:
        try:
            if issubclass(python_type, Enum):
                return _coerce_enum(python_type, raw)
            value = python_type(raw)
        except (TypeError, ArithmeticError) as exc:
            raise ValueError(f"{raw!r} is not a valid {python_type.__name__}") from exc
    if python_type is int and not fits_sql_integer(value):
        raise ValueError(f"{raw!r} is out of range for {python_type.__name__}")
    return value


def _coerce_enum(enum_type: type[Enum], raw: Any) -> Enum:
    try:
        return enum_type(raw)
    except ValueError:
        try:
            return enum_type[str(raw)]
        except KeyError as exc:
            raise ValueError(f"{raw!r} is not a valid {enum_type.__name__}") from exc


def _storage_value(column: ColumnElement[Any], value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool) and not fits_sql_integer(value):
        return float(value)
    if isinstance(value, Decimal):
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return value
        return value if python_type is Decimal else float(value)
    if not isinstance(value, datetime):
        return value
    column_type = column.type
    if isinstance(column_type, TypeDecorator):
        column_type = column_type.impl
    if isinstance(column_type, DateTime):
        if column_type.timezone:
            return value.astimezone(UTC)
        return value.replace(tzinfo=None)
    if isinstance(column_type, Date):
        return value.date()
    return value


def _validate_bool(params: Mapping[str, Any], name: str, errors: list[ErrorItem]) -> bool | None:
    raw = query_value(params, name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return parse_bool(raw)
    except ValueError:
        errors.append(
            ErrorItem(field=name, message=f"The {name} field must be true or false.", code="bool")
        )
        return None


def _validate_string(params: Mapping[str, Any], name: str, errors: list[ErrorItem]) -> str | None:
    raw = query_value(params, name)
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip()
    if not STRING_MIN_LENGTH <= len(value) <= STRING_MAX_LENGTH:
        errors.append(
            ErrorItem(
                field=name,
                message=(
                    f"The {name} field must be between {STRING_MIN_LENGTH} "
                    f"and {STRING_MAX_LENGTH} characters."
                ),
                code="string_length",
            )
        )
        return None
    return value


def _validate_select(
    params: Mapping[str, Any], name: str, errors: list[ErrorItem]
) -> list[str] | None:
    tokens = query_array(params, name)
    if tokens is None:
        if query_values(params, name):
            errors.append(
                ErrorItem(field=name, message=f"The {name} field must be an array.", code="array")
            )
        return None
    tokens = [token.strip() for token in tokens if token.strip()]
    if not tokens:
        return None
    param = f"{name}[]"
    if len(tokens) > MAX_SELECT_ITEMS:
        errors.append(
            ErrorItem(
                field=param,
                message=f"The {name} field must not have more than {MAX_SELECT_ITEMS} items.",
                code="array_max",
            )
        )
        return None
    invalid = [token for token in tokens if not SELECT_TOKEN_PATTERN.match(token)]
    if invalid:
        errors.append(
            ErrorItem(
                field=param,
                message=(
                    f"Each {name} value must be 1 to 100 letters, digits, dashes or underscores."
                ),
                code="select_token",
            )
        )
        return None
    return tokens


def _parse_number_bound(raw: str, end: bool) -> Any:
    return parse_number(raw)


def _validate_range(
    params: Mapping[str, Any],
    name: str,
    errors: list[ErrorItem],
    parse: Callable[[str, bool], Any],
    label: str,
) -> RangeBounds | None:
    bounds: dict[str, Any] = {}
    failed = False
    for suffix, end in (("min", False), ("max", True)):
        param = f"{name}_{suffix}"
        raw = query_value(params, param)
        if raw is None or raw.strip() == "":
            continue
        try:
            bounds[suffix] = parse(raw, end)
        except ValueError:
            failed = True
            errors.append(
                ErrorItem(
                    field=param,
                    message=f"The {param} field must be a valid {label}.",
                    code=label,
                )
            )
    if failed or not bounds:
        return None
    lower, upper = bounds.get("min"), bounds.get("max")
    if lower is not None and upper is not None and upper < lower:
        errors.append(
            ErrorItem(
                field=f"{name}_max",
                message=f"The {name}_max field must be greater than or equal to {name}_min.",
                code="range_order",
            )
        )
        return None
    return RangeBounds(lower=lower, upper=upper)


__all__ = [
    "BoundFilterSpec",
    "FilterKind",
    "FilterRule",
    "FilterSpec",
    "MAX_SELECT_ITEMS",
    "RangeBounds",
    "coerce_to_column",
]
