from __future__ import annotations

import csv
import io
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest
from openpyxl import load_workbook
from sqlalchemy import select

from resource_api.common.exceptions import ExportConfigurationError, NothingToExportError
from resource_api.common.query_builder import QueryRequest, build_query
from resource_api.common.workbook_export import (
    ColumnDataType,
    ColumnType,
    ExportMode,
    ExportSpec,
    ExportState,
    ExportStateError,
    TabularExporter,
    build_export_filename,
    export_headers,
)
from tests.catalog import Product, Status

HEADER = [["ID", "Name", "Released"]]


def _row(product: Product) -> list:
    return [product.id, product.name, product.released_on]


def _query(**filters):
    return build_query(select(Product), Product, None, QueryRequest(filters=filters))


def _csv_rows(data: bytes) -> list[list[str]]:
    return list(csv.reader(io.StringIO(data.decode("utf-8"))))


def test_column_type_rejects_unknown_data_type() -> None:
    with pytest.raises(ExportConfigurationError, match="Unknown column data type"):
        ColumnType(1, "currency")
    with pytest.raises(ExportConfigurationError):
        ColumnType(0, "date")


def test_export_spec_normalizes_header_and_column_types() -> None:
    spec = ExportSpec(header=["ID", "Name"], column_types=[{"index": 2, "type": "string"}])

    assert spec.header == (("ID", "Name"),)
    assert spec.column_types == (ColumnType(2, ColumnDataType.STRING),)
    assert spec.start_row == 2
    assert spec.column_count == 2


def test_export_spec_rejects_non_tabular_header() -> None:
    with pytest.raises(ExportConfigurationError, match="2D array"):
        ExportSpec(header="ID,Name")


def test_empty_export_is_rejected_before_any_output(session, seeded) -> None:
    exporter = TabularExporter(ExportSpec(header=HEADER, mode="csv"), _row)

    query = build_query(select(Product).where(Product.price > 1000), Product, None, QueryRequest())

    with pytest.raises(NothingToExportError) as excinfo:
        exporter.prepare(session, query)

    assert excinfo.value.errors[0].field == "filter"
    assert exporter.state is ExportState.IDLE


def test_steps_must_run_in_order() -> None:
    exporter = TabularExporter(ExportSpec(header=HEADER, mode=ExportMode.CSV), _row)

    with pytest.raises(ExportStateError):
        exporter.write_rows([[1, "a", None]])
    with pytest.raises(ExportStateError):
        list(exporter.finalize())

    exporter.write_header()
    list(exporter.finalize())
    with pytest.raises(ExportStateError):
        exporter.write_header()


def test_csv_export_reads_in_chunks(session_factory, session, seeded) -> None:
    spec = ExportSpec(
        header=HEADER, column_types=[ColumnType(3, "date")], chunk_size=2, mode="csv"
    )
    exporter = TabularExporter(spec, _row)
    query = _query()

    assert exporter.prepare(session, query) == 5
    rows = _csv_rows(b"".join(exporter.stream(session_factory, query)))

    assert exporter.chunk_reads == 3
    assert exporter.row_count == 5
    assert exporter.populated_rows == range(2, 7)
    assert rows[0] == ["ID", "Name", "Released"]
    assert rows[1] == ["1", "Hammer", "15.01.2024"]
    assert rows[4] == ["4", "Yo-yo", ""]


def test_exact_multiple_of_chunk_size_needs_no_extra_read(session_factory, session, seeded) -> None:
    with session_factory() as cleanup:
        cleanup.delete(cleanup.get(Product, 5))
        cleanup.commit()

    exporter = TabularExporter(ExportSpec(header=HEADER, chunk_size=2, mode="csv"), _row)
    query = _query()
    exporter.prepare(session, query)
    b"".join(exporter.stream(session_factory, query))

    assert exporter.total == 4
    assert exporter.chunk_reads == 2


def test_rows_mapped_to_nothing_are_skipped(session_factory, session, seeded) -> None:
    def only_active(product: Product):
        return _row(product) if product.status is Status.ACTIVE else []

    exporter = TabularExporter(ExportSpec(header=HEADER, chunk_size=10, mode="csv"), only_active)
    query = _query()
    exporter.prepare(session, query)
    rows = _csv_rows(b"".join(exporter.stream(session_factory, query)))

    assert [row[0] for row in rows[1:]] == ["1", "2", "5"]
    assert exporter.row_count == 3


def test_xlsx_export_applies_column_types_and_widths(session_factory, session, seeded) -> None:
    spec = ExportSpec(
        header=[["Exported products"], HEADER[0]],
        column_types=[ColumnType(2, "string"), ColumnType(3, "date")],
        auto_width=True,
        chunk_size=10,
    )
    exporter = TabularExporter(spec, _row)
    query = _query()
    exporter.prepare(session, query)

    workbook = load_workbook(io.BytesIO(b"".join(exporter.stream(session_factory, query))))
    sheet = workbook.active

    assert exporter.populated_rows == range(3, 8)
    assert sheet.max_row == 7
    assert sheet["A1"].value == "Exported products"
    assert sheet["B3"].value == "Hammer"
    assert sheet["B3"].data_type == "s"
    assert sheet["C3"].value.date() == date(2024, 1, 15)
    assert sheet["C3"].number_format == "DD.MM.YYYY"
    assert sheet["C6"].value is None
    # "Exported products" is the longest value in column A.
    assert sheet.column_dimensions["A"].width == len("Exported products") + 2
    assert sheet.column_dimensions["B"].width == len("Screwdriver 100%") + 2


def test_cell_values_are_normalized() -> None:
    exporter = TabularExporter(ExportSpec(), tz=ZoneInfo("Europe/Berlin"))

    assert exporter._cell_value(Status.ACTIVE) == "active"
    assert exporter._cell_value(datetime(2024, 6, 1, 10, 0, tzinfo=UTC)) == datetime(
        2024, 6, 1, 12, 0
    )
    assert exporter._cell_value("bad\x07value") == "badvalue"
    assert exporter._cell_value(date(2024, 1, 1)) == date(2024, 1, 1)


def test_map_row_skips_empty_mappings_and_flattens_dicts() -> None:
    exporter = TabularExporter(ExportSpec(), map_fn=lambda entity: entity)

    assert exporter.map_row({}) is None
    assert exporter.map_row(None) is None
    assert exporter.map_row({"id": 1, "status": Status.ARCHIVED}) == [1, "archived"]


def test_export_filename_and_headers() -> None:
    moment = datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC)

    assert build_export_filename("products", "xlsx", now=moment) == (
        "products_export_2024-05-06_07-08-09.xlsx"
    )
    assert build_export_filename("products", ExportMode.CSV, now=moment).endswith(".csv")
    assert export_headers("products.csv") == {
        "Content-Disposition": 'attachment; filename="products.csv"'
    }
    assert export_headers("Übersicht 2024.csv") == {
        "Content-Disposition": (
            "attachment; filename=\"bersicht 2024.csv\"; "
            "filename*=UTF-8''%C3%9Cbersicht%202024.csv"
        )
    }
    assert ExportMode.XLSX.media_type == "application/vnd.ms-excel"
    assert ExportMode.CSV.media_type == "text/csv"
