"""Chunked XLSX/CSV export of query results.

Rows are read in fixed-size chunks (``LIMIT``/``OFFSET``) so memory use is
bounded by the chunk size. XLSX output uses openpyxl's write-only workbook,
which spools rows to its own temporary storage until the archive is saved.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import tempfile
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from resource_api.common.downloads import build_content_disposition
from resource_api.common.encoding import model_to_dict
from resource_api.common.exceptions import ExportConfigurationError, NothingToExportError
from resource_api.common.listing import count_rows
from resource_api.common.query_builder import BoundedQuery
from resource_api.settings import DEFAULT_EXPORT_CHUNK_SIZE

logger = logging.getLogger(__name__)

DATE_NUMBER_FORMAT = "DD.MM.YYYY"
CSV_DATE_FORMAT = "%d.%m.%Y"
MAX_AUTO_WIDTH = 60
STREAM_BLOCK_SIZE = 64 * 1024

_NATIVE_CELL_TYPES = (str, int, float, Decimal, bool, datetime, date, time, timedelta)


class ColumnDataType(str, Enum):
    STRING = "string"
    DATE = "date"


class ExportMode(str, Enum):
    XLSX = "xlsx"
    CSV = "csv"

    @property
    def media_type(self) -> str:
        return "application/vnd.ms-excel" if self is ExportMode.XLSX else "text/csv"


class ExportState(str, Enum):
    IDLE = "idle"
    HEADER_WRITTEN = "header_written"
    STREAMING_ROWS = "streaming_rows"
    FINALIZED = "finalized"


class ExportStateError(RuntimeError):
    """An export step was called out of order."""


@dataclass(frozen=True)
class ColumnType:
    """Data type applied to one 1-based column of the data rows."""

    index: int
    type: ColumnDataType

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "type", ColumnDataType(self.type))
        except ValueError as exc:
            raise ExportConfigurationError(f"Unknown column data type: {self.type!r}") from exc
        if not isinstance(self.index, int) or self.index < 1:
            raise ExportConfigurationError(f"Column index must be >= 1 (got {self.index!r})")


@dataclass(frozen=True)
class ExportSpec:
    header: Sequence[Sequence[Any]] = (("ID",),)
    column_types: Sequence[ColumnType | Mapping[str, Any]] = ()
    auto_width: bool = False
    chunk_size: int = DEFAULT_EXPORT_CHUNK_SIZE
    mode: ExportMode = ExportMode.XLSX

    def __post_init__(self) -> None:
        object.__setattr__(self, "header", _normalize_header(self.header))
        object.__setattr__(
            self,
            "column_types",
            tuple(
                entry
                if isinstance(entry, ColumnType)
                else ColumnType(entry["index"], entry["type"])
                for entry in self.column_types
            ),
        )
        if not isinstance(self.chunk_size, int) or self.chunk_size < 1:
            raise ExportConfigurationError(f"Chunk size must be >= 1 (got {self.chunk_size!r})")
        try:
            object.__setattr__(self, "mode", ExportMode(self.mode))
        except ValueError as exc:
            raise ExportConfigurationError(f"Unknown export mode: {self.mode!r}") from exc

    @property
    def column_count(self) -> int:
        return max((len(row) for row in self.header), default=0)

    @property
    def start_row(self) -> int:
        return len(self.header) + 1


def _normalize_header(header: Any) -> tuple[tuple[Any, ...], ...]:
    if isinstance(header, (str, bytes)) or not isinstance(header, Sequence):
        raise ExportConfigurationError("Export header should be a 2D array")
    rows = list(header)
    if rows and all(isinstance(cell, str) or not isinstance(cell, Sequence) for cell in rows):
        rows = [rows]
    normalized: list[tuple[Any, ...]] = []
    for row in rows:
        if isinstance(row, (str, bytes)) or not isinstance(row, Sequence):
            raise ExportConfigurationError("Export header should be a 2D array")
        normalized.append(tuple(row))
    return tuple(normalized)


def iter_chunks(
    session: Session,
    statement: Select[Any],
    chunk_size: int,
    total: int,
) -> Iterator[list[Any]]:
    """Yield entities in ``LIMIT chunk_size OFFSET n*chunk_size`` slices.

    ``statement`` must carry a deterministic ordering (a ``BoundedQuery``
    statement always ends with the primary key). At most
    ``ceil(total / chunk_size)`` reads are issued; a short chunk ends the scan.
    """

    for index in range(math.ceil(total / chunk_size)):
        stmt = statement.limit(chunk_size).offset(index * chunk_size)
        rows = list(session.execute(stmt).unique().scalars().all())
        if rows:
            yield rows
        if len(rows) < chunk_size:
            return


def build_export_filename(
    resource: str, mode: ExportMode | str, *, now: datetime | None = None
) -> str:
    moment = now or datetime.now(UTC)
    return f"{resource}_export_{moment:%Y-%m-%d_%H-%M-%S}.{ExportMode(mode).value}"


def export_headers(filename: str) -> dict[str, str]:
    return {"Content-Disposition": build_content_disposition(filename)}


class _CsvSink:
    def __init__(self) -> None:
        self._buffer = io.StringIO()
        self._writer = csv.writer(self._buffer)

    def write_header(self, header: Sequence[Sequence[Any]], widths: Sequence[float]) -> None:
        for row in header:
            self._writer.writerow(["" if value is None else value for value in row])

    def write_row(self, row: Sequence[Any], column_types: Mapping[int, ColumnDataType]) -> None:
        values: list[Any] = []
        for index, value in enumerate(row, start=1):
            if value is None:
                values.append("")
            elif column_types.get(index) is ColumnDataType.DATE and isinstance(value, date):
                values.append(value.strftime(CSV_DATE_FORMAT))
            else:
                values.append(value)
        self._writer.writerow(values)

    def drain(self) -> bytes:
        data = self._buffer.getvalue()
        self._buffer.seek(0)
        self._buffer.truncate(0)
        return data.encode("utf-8")

    def close(self) -> Iterator[bytes]:
        data = self.drain()
        if data:
            yield data


class _XlsxSink:
    def __init__(self) -> None:
        self._workbook = Workbook(write_only=True)
        self._sheet = self._workbook.create_sheet("Export")

    def write_header(self, header: Sequence[Sequence[Any]], widths: Sequence[float]) -> None:
        # Write-only sheets accept column dimensions only before the first row.
        for index, width in enumerate(widths, start=1):
            self._sheet.column_dimensions[get_column_letter(index)].width = width
        for row in header:
            self._sheet.append(list(row))

    def write_row(self, row: Sequence[Any], column_types: Mapping[int, ColumnDataType]) -> None:
        cells: list[Any] = []
        for index, value in enumerate(row, start=1):
            kind = column_types.get(index)
            if kind is None or value is None:
                cells.append(value)
                continue
            if kind is ColumnDataType.STRING:
                cell = WriteOnlyCell(self._sheet, value=str(value))
                cell.data_type = "s"
            else:
                cell = WriteOnlyCell(self._sheet, value=value)
                cell.number_format = DATE_NUMBER_FORMAT
            cells.append(cell)
        self._sheet.append(cells)

    def drain(self) -> bytes:
        return b""

    def close(self) -> Iterator[bytes]:
        with tempfile.TemporaryFile() as handle:
            self._workbook.save(handle)
            handle.seek(0)
            while block := handle.read(STREAM_BLOCK_SIZE):
                yield block


@dataclass
class TabularExporter:
    """Stream query results into an XLSX or CSV document.

    Steps run in order ``prepare`` -> ``write_header`` -> ``write_rows`` (any
    number of times) -> ``finalize``; :meth:`stream` drives all of them.
    """

    spec: ExportSpec
    map_fn: Callable[[Any], Any] | None = None
    tz: tzinfo = UTC
    state: ExportState = field(default=ExportState.IDLE, init=False)
    total: int | None = field(default=None, init=False)
    row_count: int = field(default=0, init=False)
    chunk_reads: int = field(default=0, init=False)
    _sink: _CsvSink | _XlsxSink | None = field(default=None, init=False, repr=False)

    @property
    def populated_rows(self) -> range:
        """Sheet rows holding data (1-based, header rows excluded)."""

        start = self.spec.start_row
        return range(start, start + self.row_count)

    def prepare(self, session: Session, query: BoundedQuery) -> int:
        """Count matching rows; zero rows is rejected before any document exists."""

        self._require(ExportState.IDLE)
        total = count_rows(session, query.statement)
        if total == 0:
            raise NothingToExportError()
        self.total = total
        return total

    def map_row(self, entity: Any) -> list[Any] | None:
        mapped = self.map_fn(entity) if self.map_fn is not None else model_to_dict(entity)
        if not mapped:
            return None
        values = mapped.values() if isinstance(mapped, Mapping) else mapped
        return [self._cell_value(value) for value in values]

    def write_header(self, sample_rows: Iterable[Sequence[Any]] = ()) -> bytes:
        self._require(ExportState.IDLE)
        self._sink = _XlsxSink() if self.spec.mode is ExportMode.XLSX else _CsvSink()
        widths = self._auto_widths(sample_rows) if self.spec.auto_width else []
        self._sink.write_header(self.spec.header, widths)
        self.state = ExportState.HEADER_WRITTEN
        return self._sink.drain()

    def write_rows(self, rows: Iterable[Sequence[Any] | None]) -> bytes:
        self._require(ExportState.HEADER_WRITTEN, ExportState.STREAMING_ROWS)
        assert self._sink is not None
        column_types = {entry.index: entry.type for entry in self.spec.column_types}
        for row in rows:
            if not row:
                continue
            self._sink.write_row(row, column_types)
            self.row_count += 1
        self.state = ExportState.STREAMING_ROWS
        return self._sink.drain()

    def finalize(self) -> Iterator[bytes]:
        self._require(ExportState.HEADER_WRITTEN, ExportState.STREAMING_ROWS)
        assert self._sink is not None
        self.state = ExportState.FINALIZED
        yield from self._sink.close()

    def stream(
        self, session_factory: Callable[[], Session], query: BoundedQuery
    ) -> Iterator[bytes]:
        """Yield the document bytes, reading rows through a session of its own."""

        if self.total is None:
            raise ExportStateError("prepare() must run before stream()")
        statement = query.statement.options(*query.options) if query.options else query.statement
        with session_factory() as session:
            chunks = iter_chunks(session, statement, self.spec.chunk_size, self.total)
            first = self._read(chunks, session) or []
            yield from _non_empty(self.write_header(first))
            yield from _non_empty(self.write_rows(first))
            while True:
                rows = self._read(chunks, session)
                if rows is None:
                    break
                yield from _non_empty(self.write_rows(rows))
        yield from self.finalize()
        logger.info(
            "resource.export.complete",
            extra={
                "rows": self.row_count,
                "chunk_reads": self.chunk_reads,
                "mode": self.spec.mode.value,
            },
        )

    def _read(
        self, chunks: Iterator[list[Any]], session: Session
    ) -> list[list[Any] | None] | None:
        entities = next(chunks, None)
        if entities is None:
            return None
        self.chunk_reads += 1
        rows = [self.map_row(entity) for entity in entities]
        session.expunge_all()
        return rows

    def _auto_widths(self, sample_rows: Iterable[Sequence[Any] | None]) -> list[float]:
        widths = [0] * self.spec.column_count
        for row in [*self.spec.header, *(row for row in sample_rows or () if row)]:
            for index, value in enumerate(row):
                if index >= len(widths):
                    widths.append(0)
                widths[index] = max(widths[index], len(_display(value)))
        return [min(width + 2, MAX_AUTO_WIDTH) for width in widths]

    def _cell_value(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(self.tz).replace(tzinfo=None)
        if isinstance(value, str):
            return ILLEGAL_CHARACTERS_RE.sub("", value)
        if isinstance(value, _NATIVE_CELL_TYPES):
            return value
        return ILLEGAL_CHARACTERS_RE.sub("", str(value))

    def _require(self, *states: ExportState) -> None:
        if self.state not in states:
            expected = " or ".join(state.value for state in states)
            raise ExportStateError(f"Export is {self.state.value}; expected {expected}")


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%d.%m.%Y %H:%M")
    if isinstance(value, date):
        return value.strftime(CSV_DATE_FORMAT)
    return str(value)


def _non_empty(data: bytes) -> Iterator[bytes]:
    if data:
        yield data


__all__ = [
    "ColumnDataType",
    "ColumnType",
    "ExportMode",
    "ExportSpec",
    "ExportState",
    "ExportStateError",
    "TabularExporter",
    "build_export_filename",
    "export_headers",
    "iter_chunks",
]
