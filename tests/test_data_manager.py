"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from dealer_engine import constants, data_manager


def _document(key: str, version: int = 1, body: str = "{}") -> data_manager.DocumentRow:
    return data_manager.DocumentRow(
        collection="catalog",
        document_key=key,
        version=version,
        body=body,
        updated_at="2025-03-01T12:00:00+00:00",
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile=dealer_master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_path


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "PortalName") == "Test Portal"
    assert parser.get("Engine", "MaxWriteRetries") == "3"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.portal_name == "Test Portal"


def test_parse_settings_defaults_engine_section():
    """The Engine section is optional and falls back to defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=/tmp/x.xlsx\nPortalName=P\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser)

    assert settings.sku_delimiter == data_manager.DEFAULT_SKU_DELIMITER
    assert settings.max_write_retries == data_manager.DEFAULT_MAX_WRITE_RETRIES


def test_parse_settings_reads_engine_overrides(config_factory):
    """SkuDelimiter and MaxWriteRetries come from the Engine section."""

    bundle = config_factory(sku_delimiter="/", max_write_retries=7)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.sku_delimiter == "/"
    assert settings.max_write_retries == 7


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize("raw", ["0", "-2", "many"])
def test_parse_settings_rejects_bad_retry_budget(raw, tmp_path):
    """MaxWriteRetries must be a positive integer."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=x.xlsx\nPortalName=P\nSchemaVersion=1.0.0\n"
        f"[Engine]\nMaxWriteRetries={raw}\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {member.value for member in constants.SheetName}


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_creates_parent_directories(master_workbook_path, tmp_path):
    """Saving to a nested destination should create the folders on demand."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_document(workbook, _document("STRAT"))
    destination = tmp_path / "exports" / "copy.xlsx"

    data_manager.save_workbook(workbook, destination)

    copy = openpyxl.load_workbook(destination)
    rows = list(copy[data_manager.DOCUMENTS_SHEET].iter_rows(min_row=2, values_only=True))
    assert rows[0][:3] == ("catalog", "STRAT", 1)


def test_refresh_workbook_discards_unsaved_rows(master_workbook_path):
    """refresh_workbook should reload the file from disk."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_document(workbook, _document("UNSAVED"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not workbook
    assert list(data_manager.iter_documents(refreshed)) == []


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_append_document_returns_row_index(master_workbook_path):
    """Each appended document reports the Excel row it landed on."""

    workbook = data_manager.open_workbook(master_workbook_path)

    first = data_manager.append_document(workbook, _document("A"))
    second = data_manager.append_document(workbook, _document("B"))

    assert (first, second) == (2, 3)


def test_update_document_changes_only_named_fields(master_workbook_path):
    """update_document should leave unspecified columns untouched."""

    workbook = data_manager.open_workbook(master_workbook_path)
    row_index = data_manager.append_document(workbook, _document("A", body='{"a":1}'))

    data_manager.update_document(workbook, row_index, field_values={"Version": 2, "Body": '{"a":2}'})

    (row,) = list(data_manager.iter_documents(workbook))
    assert row.version == 2
    assert row.body == '{"a":2}'
    assert row.document_key == "A"
    assert row.updated_at == "2025-03-01T12:00:00+00:00"


def test_update_document_rejects_unknown_field(master_workbook_path):
    """Unknown column names should raise KeyError rather than write blindly."""

    workbook = data_manager.open_workbook(master_workbook_path)
    row_index = data_manager.append_document(workbook, _document("A"))

    with pytest.raises(KeyError):
        data_manager.update_document(workbook, row_index, field_values={"Colour": "red"})


def test_locate_row_matches_all_criteria(master_workbook_path):
    """locate_row should find the row whose cells satisfy every criterion."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_document(workbook, _document("A"))
    data_manager.append_document(workbook, _document("B"))

    found = data_manager.locate_row(
        workbook, data_manager.DOCUMENTS_SHEET, {"Collection": "catalog", "DocumentKey": "B"}
    )
    missing = data_manager.locate_row(workbook, data_manager.DOCUMENTS_SHEET, {"DocumentKey": "Z"})

    assert found == 3
    assert missing is None


def test_iter_documents_skips_blank_rows_and_coerces_keys(master_workbook_path):
    """Blank rows are ignored and numeric keys come back as strings."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[data_manager.DOCUMENTS_SHEET]
    sheet.append(["catalog", 1001, None, "{}", None])
    sheet.append([None, None, None, None, None])

    rows = list(data_manager.iter_documents(workbook))

    assert len(rows) == 1
    assert rows[0].document_key == "1001"
    assert rows[0].version == 0


def test_index_documents_maps_keys_to_rows(master_workbook_path):
    """index_documents should report where each document lives."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_document(workbook, _document("A"))
    data_manager.append_document(workbook, _document("B"))

    assert data_manager.index_documents(workbook) == {("catalog", "A"): 2, ("catalog", "B"): 3}


def test_log_entries_round_trip_through_sheet(master_workbook_path):
    """Log rows appended to the sheet are read back in order."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for sequence in (1, 2):
        data_manager.append_log_entry(
            workbook,
            data_manager.LogRow("order_history", "O1", sequence, '{"status":"DRAFT"}', "2025-03-01"),
        )

    entries = list(data_manager.iter_log_entries(workbook))

    assert [entry.sequence for entry in entries] == [1, 2]
    assert all(entry.document_key == "O1" for entry in entries)


def test_encode_body_is_stable():
    """Bodies are serialised with sorted keys so identical documents compare equal."""

    assert data_manager.encode_body({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert data_manager.decode_body("") == {}
