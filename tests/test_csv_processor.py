from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from lossdiff.csv_processor import (
    LOSS_COLUMNS,
    FileAccessError,
    LossCSVReader,
    ParseError,
    decode_loss_bytes,
    parse_loss_csv,
)


def test_parse_keeps_file_order_and_float_dtype():
    # Steps deliberately out of order: file order is canonical, never re-sorted
    df = parse_loss_csv("3,5,10\n1,10,8\n2,9,9\n")
    assert list(df.columns) == LOSS_COLUMNS
    assert df["step"].tolist() == [3.0, 1.0, 2.0]
    assert df["value_a"].tolist() == [5.0, 10.0, 9.0]
    assert df["value_b"].tolist() == [10.0, 8.0, 9.0]
    assert all(dtype == np.float64 for dtype in df.dtypes)
    assert isinstance(df.index, pd.RangeIndex)


def test_parse_empty_input_gives_empty_frame():
    df = parse_loss_csv("")
    assert df.empty
    assert list(df.columns) == LOSS_COLUMNS


def test_parse_skips_blank_lines_and_leading_bom():
    df = parse_loss_csv("\ufeff1,2.5,2.0\n\n2,1e-3,0.5\n")
    assert len(df) == 2
    assert df.loc[1, "value_a"] == pytest.approx(1e-3)


def test_parse_accepts_surrounding_whitespace_and_crlf():
    df = parse_loss_csv("1, 2.0 ,3\r\n2,4,5\r\n")
    assert df["value_a"].tolist() == [2.0, 4.0]


def test_parse_accepts_nan_literal():
    df = parse_loss_csv("1,nan,2\n")
    assert np.isnan(df.loc[0, "value_a"])


def test_wrong_column_count_reports_row_index():
    with pytest.raises(ParseError) as excinfo:
        parse_loss_csv("1,2,3\n2,3\n3,4,5\n")
    err = excinfo.value
    assert err.row_index == 1
    assert err.line_number == 2
    assert "expected 3 fields, found 2" in err.reason


def test_too_many_columns_fails():
    with pytest.raises(ParseError) as excinfo:
        parse_loss_csv("1,2,3,4\n")
    assert excinfo.value.row_index == 0


def test_non_numeric_field_reports_first_bad_row_and_column():
    with pytest.raises(ParseError) as excinfo:
        parse_loss_csv("1,2,3\n2,3,4\n3,abc,5\n4,5,xyz\n")
    err = excinfo.value
    assert err.row_index == 2
    assert "value_a" in err.reason
    assert "'abc'" in err.reason


def test_header_row_is_not_expected():
    # A header line is data like any other row and is not numeric
    with pytest.raises(ParseError) as excinfo:
        parse_loss_csv("step,xpu,gpu\n1,2,3\n")
    assert excinfo.value.row_index == 0


def test_empty_field_is_non_numeric():
    with pytest.raises(ParseError) as excinfo:
        parse_loss_csv("1,,3\n")
    assert "value_a" in excinfo.value.reason


def test_row_index_counts_data_rows_not_blank_lines():
    with pytest.raises(ParseError) as excinfo:
        parse_loss_csv("1,2,3\n\n\n2,x,3\n")
    assert excinfo.value.row_index == 1
    assert excinfo.value.line_number == 4


def test_decode_loss_bytes_rejects_invalid_utf8():
    with pytest.raises(ParseError) as excinfo:
        decode_loss_bytes(b"1,2,3\n\xff\xfe")
    assert excinfo.value.row_index is None
    assert decode_loss_bytes(b"1,2,3\n") == "1,2,3\n"
    assert decode_loss_bytes("already text") == "already text"


def test_reader_reads_and_reports_file_info(tmp_path: Path):
    path = tmp_path / "loss.csv"
    path.write_text("1,10,8\n2,9,9\n", encoding="utf-8")
    with LossCSVReader(path) as reader:
        info = reader.get_file_info()
        text = reader.read_text()
    assert info["file_name"] == "loss.csv"
    assert info["file_size"] == len("1,10,8\n2,9,9\n")
    assert "last_modified" in info
    assert len(parse_loss_csv(text)) == 2


def test_reader_rejects_missing_file_and_directory(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        LossCSVReader(tmp_path / "missing.csv")
    with pytest.raises(FileAccessError):
        LossCSVReader(tmp_path)
