import pytest

from catalog_import.infra.sources.csv_reader import CsvFormatError, CsvRecordSource, parseNull


def write_csv(tmp_path, text, name="products.csv"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_rows_are_numbered_from_one_and_blank_lines_skipped(tmp_path):
    path = write_csv(tmp_path, "title,handle\nShirt,shirt\n,\nHat, hat \n")

    records = list(CsvRecordSource(path))

    assert [r.row_index for r in records] == [1, 2]
    assert records[1].values == {"title": "Hat", "handle": "hat"}


def test_null_values_become_none(tmp_path):
    path = write_csv(tmp_path, "title,subtitle\nShirt,NULL\n")

    (record,) = list(CsvRecordSource(path))

    assert record.values["subtitle"] is None
    assert parseNull("  ") is None
    assert parseNull(" x ") == "x"


def test_extra_columns_are_fatal(tmp_path):
    path = write_csv(tmp_path, "title,handle\nShirt,shirt,extra\n")

    with pytest.raises(CsvFormatError, match="column count"):
        list(CsvRecordSource(path))


def test_missing_header(tmp_path):
    path = write_csv(tmp_path, "")

    with pytest.raises(CsvFormatError):
        list(CsvRecordSource(path))
    with pytest.raises(CsvFormatError):
        CsvRecordSource(path).read_headers()


def test_headers_and_semicolon_delimiter(tmp_path):
    path = write_csv(tmp_path, "﻿title; handle\nShirt;shirt\n")
    source = CsvRecordSource(path, delimiter=";")

    assert source.read_headers() == ["title", "handle"]
    assert list(source)[0].values["handle"] == "shirt"
