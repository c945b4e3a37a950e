"""Small coercion helpers shared by request parsing and filters."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, date, datetime, time, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any

TRUE_TOKENS = frozenset({"true", "1", "yes", "on"})
FALSE_TOKENS = frozenset({"false", "0", "no", "off"})
LIKE_ESCAPE = "\\"
# Signed 64-bit range shared by SQLite INTEGER and BIGINT columns.
MIN_SQL_INTEGER = -(2**63)
MAX_SQL_INTEGER = 2**63 - 1

_INDEXED_KEY = re.compile(r"^(?P<name>.+)\[(?P<index>\d*)\]$")


def normalize_utc(dt: datetime | None) -> datetime | None:
    """Return ``dt`` coerced to UTC, treating naive datetimes as UTC."""

    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def fits_sql_integer(value: int) -> bool:
    return MIN_SQL_INTEGER <= value <= MAX_SQL_INTEGER


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in TRUE_TOKENS:
        return True
    if normalized in FALSE_TOKENS:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def parse_number(value: str) -> int | Decimal:
    """Parse an integer or decimal literal; non-finite values are rejected."""

    candidate = value.strip()
    try:
        return int(candidate)
    except ValueError:
        pass
    try:
        number = Decimal(candidate)
    except InvalidOperation as exc:
        raise ValueError(f"{value!r} is not a number") from exc
    if not number.is_finite():
        raise ValueError(f"{value!r} is not a number")
    return number


def parse_day_bound(value: str, tz: tzinfo, *, end: bool) -> datetime:
    """Parse an ISO-8601 date or datetime and clamp it to the start or end of its day in ``tz``."""

    candidate = value.strip()
    try:
        if len(candidate) == 10:
            day = date.fromisoformat(candidate)
        else:
            moment = datetime.fromisoformat(candidate)
            if moment.tzinfo is not None:
                moment = moment.astimezone(tz)
            day = moment.date()
    except ValueError as exc:
        raise ValueError(f"{value!r} is not a valid date") from exc
    return datetime.combine(day, time.max if end else time.min, tzinfo=tz)


def escape_like(token: str) -> str:
    return (
        token.replace(LIKE_ESCAPE, LIKE_ESCAPE + LIKE_ESCAPE)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def query_values(params: Mapping[str, Any], key: str) -> list[str]:
    """Return every value sent for ``key``; accepts Starlette ``QueryParams`` or plain dicts."""

    getlist = getattr(params, "getlist", None)
    if getlist is not None:
        return [str(item) for item in getlist(key)]
    value = params.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def query_value(params: Mapping[str, Any], key: str) -> str | None:
    values = query_values(params, key)
    return values[-1] if values else None


def query_array(params: Mapping[str, Any], name: str) -> list[str] | None:
    """Collect ``name[]`` and ``name[N]`` values in index order.

    Returns ``None`` when no array-style key for ``name`` was sent.
    """

    found = False
    appended: list[str] = []
    indexed: list[tuple[int, str]] = []
    for key in list(params.keys()):
        match = _INDEXED_KEY.match(key)
        if match is None or match.group("name") != name:
            continue
        found = True
        index = match.group("index")
        if index:
            indexed.extend((int(index), value) for value in query_values(params, key))
        else:
            appended.extend(query_values(params, key))
    if not found:
        return None
    return [value for _, value in sorted(indexed, key=lambda pair: pair[0])] + appended


__all__ = [
    "FALSE_TOKENS",
    "MAX_SQL_INTEGER",
    "MIN_SQL_INTEGER",
    "TRUE_TOKENS",
    "escape_like",
    "fits_sql_integer",
    "normalize_utc",
    "parse_bool",
    "parse_day_bound",
    "parse_number",
    "query_array",
    "query_value",
    "query_values",
]
