"""Data access layer for the dealer engine.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading document and log rows and appending or updating
   individual rows.

Document bodies are stored as JSON text in a single cell so the workbook can
back the generic document store without a sheet per entity.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
DOCUMENTS_SHEET = SheetName.DOCUMENTS.value
LOGS_SHEET = SheetName.LOGS.value

DEFAULT_SKU_DELIMITER = ""
DEFAULT_MAX_WRITE_RETRIES = 3


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    portal_name: str
    schema_version: str
    sku_delimiter: str = DEFAULT_SKU_DELIMITER
    max_write_retries: int = DEFAULT_MAX_WRITE_RETRIES


@dataclass(frozen=True)
class DocumentRow:
    """In-memory view of a row from the ``Documents`` sheet."""

    collection: str
    document_key: str
    version: int
    body: str
    updated_at: str


@dataclass(frozen=True)
class LogRow:
    """In-memory view of a row from the ``Logs`` sheet."""

    collection: str
    document_key: str
    sequence: int
    body: str
    recorded_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of individual entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. The ``[Engine]`` section is optional
    and each of its entries falls back to a default. Relative ``DataFile``
    paths are anchored at ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``MaxWriteRetries`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        portal_name = parser.get("System", "PortalName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    sku_delimiter = parser.get("Engine", "SkuDelimiter", fallback=DEFAULT_SKU_DELIMITER)
    max_write_retries = parser.getint("Engine", "MaxWriteRetries", fallback=DEFAULT_MAX_WRITE_RETRIES)
    if max_write_retries < 1:
        raise ValueError("MaxWriteRetries must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        portal_name=portal_name,
        schema_version=schema_version,
        sku_delimiter=sku_delimiter,
        max_write_retries=max_write_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_documents(workbook: Workbook) -> Iterable[DocumentRow]:
    """Iterate over document rows stored on the ``Documents`` worksheet.

    The header row and fully empty rows are skipped.

    Yields:
        DocumentRow: One structured row for each meaningful record in the sheet.
    """

    sheet = workbook[DOCUMENTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_document(raw)


def iter_log_entries(workbook: Workbook) -> Iterable[LogRow]:
    """Stream append-only log rows from the ``Logs`` worksheet in sheet order."""

    sheet = workbook[LOGS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_log_entry(raw)


def append_document(workbook: Workbook, record: DocumentRow) -> int:
    """Append a document row and return its 1-based Excel row index."""

    sheet = workbook[DOCUMENTS_SHEET]
    sheet.append(serialize_document(record))
    return sheet.max_row


def append_log_entry(workbook: Workbook, record: LogRow) -> None:
    """Append a log row to the ``Logs`` worksheet."""

    sheet = workbook[LOGS_SHEET]
    sheet.append(serialize_log_entry(record))


def update_document(workbook: Workbook, row_index: int, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of the document stored at ``row_index``.

    Only the specified fields are modified, leaving other columns untouched.

    Raises:
        KeyError: If any referenced column is not part of the sheet header.
    """

    sheet = workbook[DOCUMENTS_SHEET]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown document field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, criteria: Mapping[str, object]) -> Optional[int]:
    """Find the first row whose cells match every ``column -> value`` criterion.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        criteria (Mapping[str, object]): Header titles mapped to the values the
            row must hold.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If a criterion names a column missing from the header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    for column in criteria:
        if column not in header_map:
            raise KeyError(f"Unknown column: {column}")

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if all(row[header_map[column] - 1] == value for column, value in criteria.items()):
            return row_idx

    return None


def _header_map(sheet: Any) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def encode_body(body: Mapping[str, Any]) -> str:
    """Serialise a document body into the JSON text stored in the workbook."""

    return json.dumps(body, sort_keys=True, separators=(",", ":"))


def decode_body(text: str) -> dict[str, Any]:
    """Parse the JSON text of a stored body back into a dictionary."""

    return json.loads(text) if text else {}


def serialize_document(record: DocumentRow) -> list[object]:
    """Convert a document row into ``[Collection, DocumentKey, Version, Body, UpdatedAt]``."""

    return [record.collection, record.document_key, record.version, record.body, record.updated_at]


def serialize_log_entry(record: LogRow) -> list[object]:
    """Convert a log row into ``[Collection, DocumentKey, Sequence, Body, RecordedAt]``."""

    return [record.collection, record.document_key, record.sequence, record.body, record.recorded_at]


def deserialize_document(raw_row: Sequence[object]) -> DocumentRow:
    """Convert a raw worksheet row into a strongly typed document row.

    Identifiers are coerced to ``str`` so that Excel's habit of turning numeric
    keys into numbers cannot break lookups; a blank version reads as ``0``.
    """

    collection, document_key, version_raw, body, updated_at = raw_row[:5]
    return DocumentRow(
        collection=str(collection),
        document_key=str(document_key),
        version=int(version_raw) if version_raw is not None else 0,
        body=str(body) if body is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )


def deserialize_log_entry(raw_row: Sequence[object]) -> LogRow:
    """Convert a raw worksheet row into a strongly typed log row."""

    collection, document_key, sequence_raw, body, recorded_at = raw_row[:5]
    return LogRow(
        collection=str(collection),
        document_key=str(document_key),
        sequence=int(sequence_raw) if sequence_raw is not None else 0,
        body=str(body) if body is not None else "",
        recorded_at=str(recorded_at) if recorded_at is not None else "",
    )


def index_documents(workbook: Workbook) -> dict[tuple[str, str], int]:
    """Map each ``(collection, document_key)`` pair to its worksheet row index.

    Later rows win when a key appears twice, matching the order in which the
    rows were written.
    """

    sheet = workbook[DOCUMENTS_SHEET]
    index: dict[tuple[str, str], int] = {}
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            row = deserialize_document(raw)
            index[(row.collection, row.document_key)] = row_idx
    return index
