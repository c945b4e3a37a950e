from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import select

from resource_api.common.exceptions import FilterSpecError, ValidationError
from resource_api.common.list_filters import FilterKind, FilterSpec, RangeBounds
from tests.catalog import Product, Status

SPEC = FilterSpec(
    active="bool",
    name="string",
    status="select",
    price="num_range",
    released_on="date_range",
    created_at="date_range",
)


def _ids(session, values) -> list[int]:
    stmt = select(Product.id).where(*SPEC.bind(Product).predicates(values)).order_by(Product.id)
    return list(session.execute(stmt).scalars())


def test_unknown_filter_kind_is_rejected() -> None:
    with pytest.raises(FilterSpecError, match="Unknown filter kind 'fuzzy'"):
        FilterSpec(name="fuzzy")


def test_bind_rejects_unmapped_field() -> None:
    with pytest.raises(FilterSpecError, match="not a mapped column"):
        FilterSpec(colour="string").bind(Product)


def test_rules_expose_parameter_names_per_kind() -> None:
    params = {rule.param for rule in SPEC.rules()}

    assert {"active", "name", "status[]", "price_min", "price_max"} <= params
    assert {"released_on_min", "released_on_max"} <= params
    assert SPEC["price"] is FilterKind.NUM_RANGE
    assert list(SPEC) == ["active", "name", "status", "price", "released_on", "created_at"]


def test_validate_parses_every_kind() -> None:
    values, errors = SPEC.validate(
        {
            "active": "false",
            "name": "  ham ",
            "status[]": ["active", "draft"],
            "price_min": "5",
            "price_max": "12.5",
        }
    )

    assert errors == []
    assert values["active"] is False
    assert values["name"] == "ham"
    assert values["status"] == ["active", "draft"]
    assert values["price"] == RangeBounds(lower=5, upper=Decimal("12.5"))


def test_absent_and_blank_parameters_are_skipped() -> None:
    values, errors = SPEC.validate({"name": "   ", "status[]": ["", " "], "price_min": ""})

    assert values == {}
    assert errors == []


def test_all_failures_are_reported_together() -> None:
    _, errors = SPEC.validate(
        {
            "active": "maybe",
            "name": "ab",
            "status": "active",
            "price_min": "10",
            "price_max": "2",
            "released_on_min": "yesterday",
        }
    )

    by_field = {error.field: error.code for error in errors}
    assert by_field == {
        "active": "bool",
        "name": "string_length",
        "status": "array",
        "price_max": "range_order",
        "released_on_min": "date",
    }


def test_select_limits_item_count_and_token_shape() -> None:
    _, too_many = SPEC.validate({"status[]": [f"s{i}" for i in range(21)]})
    _, bad_token = SPEC.validate({"status[]": ["active", "drop table"]})

    assert [error.code for error in too_many] == ["array_max"]
    assert [error.field for error in bad_token] == ["status[]"]


def test_select_accepts_indexed_keys() -> None:
    values = SPEC.parse({"status[1]": "draft", "status[0]": "active"})

    assert values["status"] == ["active", "draft"]


def test_parse_raises_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        SPEC.parse({"price_min": "abc"})

    assert excinfo.value.errors[0].field == "price_min"


def test_date_range_bounds_cover_whole_days_in_timezone() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    values = SPEC.parse(
        {"released_on_min": "2024-02-01", "released_on_max": "2024-03-10"}, tz=berlin
    )

    bounds = values["released_on"]
    assert bounds.lower == datetime.combine(date(2024, 2, 1), time.min, tzinfo=berlin)
    assert bounds.upper == datetime.combine(date(2024, 3, 10), time.max, tzinfo=berlin)


def test_predicates_filter_rows(session, seeded) -> None:
    assert _ids(session, SPEC.parse({"status[]": ["active"]})) == [1, 2, 5]
    assert _ids(session, SPEC.parse({"active": "0"})) == [3]
    assert _ids(session, SPEC.parse({"price_min": "5", "price_max": "15"})) == [1, 2, 5]
    assert _ids(session, SPEC.parse({"price_max": "4.5"})) == [4]
    assert _ids(
        session, SPEC.parse({"released_on_min": "2024-02-01", "released_on_max": "2024-03-10"})
    ) == [2, 3]


def test_string_filter_escapes_like_wildcards(session, seeded) -> None:
    assert _ids(session, SPEC.parse({"name": "100%"})) == [2]
    assert _ids(session, SPEC.parse({"name": "r 1"})) == [2]
    assert _ids(session, SPEC.parse({"name": "%%%"})) == []


def test_datetime_range_on_utc_column(session, seeded) -> None:
    # Seeds are created at 12:00 UTC on 2024-01-01 .. 2024-01-05.
    values = SPEC.parse({"created_at_min": "2024-01-02", "created_at_max": "2024-01-03"})

    assert _ids(session, values) == [2, 3]


def test_select_value_that_does_not_fit_the_column_is_a_validation_error() -> None:
    values = SPEC.parse({"status[]": ["unknown"]})

    with pytest.raises(ValidationError) as excinfo:
        SPEC.bind(Product).predicates(values)

    assert excinfo.value.errors[0].field == "status[]"


def test_select_coerces_enum_tokens(session, seeded) -> None:
    values = SPEC.parse({"status[]": ["ARCHIVED"]})

    assert _ids(session, values) == [4]
    assert session.get(Product, 4).status is Status.ARCHIVED
