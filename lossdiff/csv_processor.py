#!/usr/bin/env python3
"""
Loss CSV Processor
Parses headerless three-column loss traces (step, value_a, value_b) into typed
DataFrames, with row-level error reporting and no partial results.
"""

import csv
import io
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

# Column names synthesized for the headerless input, in file order.
LOSS_COLUMNS: List[str] = ["step", "value_a", "value_b"]

# Literal NaN spellings accepted as numeric fields (pd.to_numeric coerces them to NaN).
_NAN_TOKENS = {"nan", "+nan", "-nan"}


class CSVProcessingError(Exception):
    """Base exception for CSV processing errors."""

    pass


class FileAccessError(CSVProcessingError):
    """Raised when file cannot be accessed or read."""

    pass


class ParseError(CSVProcessingError):
    """
    Raised when the loss CSV is malformed.

    Attributes:
        row_index: 0-based index of the offending data row, or None when the
            failure is not tied to a row (e.g. undecodable bytes).
        reason: Human-readable description of the problem.
        line_number: 1-based physical line in the input, when known.
    """

    def __init__(
        self,
        row_index: Optional[int],
        reason: str,
        line_number: Optional[int] = None,
    ) -> None:
        self.row_index = row_index
        self.reason = reason
        self.line_number = line_number
        if row_index is None:
            message = reason
        elif line_number is None:
            message = f"row {row_index}: {reason}"
        else:
            message = f"row {row_index} (line {line_number}): {reason}"
        super().__init__(message)


def decode_loss_bytes(raw: Union[bytes, bytearray, str]) -> str:
    """
    Decode uploaded file content as UTF-8 text.

    Raises:
        ParseError: If the bytes are not valid UTF-8
    """
    if isinstance(raw, str):
        return raw
    try:
        return bytes(raw).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(None, f"input is not valid UTF-8: {e}") from e


def _tokenize_rows(raw_text: str) -> tuple[list[list[str]], list[int]]:
    """
    Split raw text into rows of exactly len(LOSS_COLUMNS) fields.

    Blank lines are skipped. Returns the rows and their 1-based line numbers.
    """
    rows: list[list[str]] = []
    line_numbers: list[int] = []
    reader = csv.reader(io.StringIO(raw_text))
    for fields in reader:
        if not fields:
            continue
        if len(fields) != len(LOSS_COLUMNS):
            raise ParseError(
                len(rows),
                f"expected {len(LOSS_COLUMNS)} fields, found {len(fields)}",
                reader.line_num,
            )
        rows.append(fields)
        line_numbers.append(reader.line_num)
    return rows, line_numbers


def parse_loss_csv(raw_text: str) -> pd.DataFrame:
    """
    Parse headerless loss CSV text into a DataFrame.

    The input has one record per line with fields in the fixed order
    (step, value_a, value_b). Rows keep file order and are never re-sorted by
    step. Either the whole text parses or nothing is returned.

    Args:
        raw_text: Decoded CSV text

    Returns:
        pd.DataFrame: float64 columns LOSS_COLUMNS with a RangeIndex

    Raises:
        ParseError: On the first row with the wrong column count or a non-numeric field
    """
    if raw_text.startswith("\ufeff"):
        raw_text = raw_text[1:]

    rows, line_numbers = _tokenize_rows(raw_text)
    if not rows:
        return pd.DataFrame({col: pd.Series(dtype="float64") for col in LOSS_COLUMNS})

    df_text = pd.DataFrame(rows, columns=LOSS_COLUMNS).apply(lambda s: s.str.strip())
    df_numeric = df_text.apply(pd.to_numeric, errors="coerce")

    # Coerced NaN is only legitimate when the field literally spells NaN.
    nan_literal = df_text.apply(lambda s: s.str.lower().isin(_NAN_TOKENS))
    invalid = df_numeric.isna() & ~nan_literal
    invalid_rows = invalid.any(axis=1)
    if invalid_rows.any():
        row_index = int(invalid_rows.to_numpy().argmax())
        column = next(col for col in LOSS_COLUMNS if invalid.at[row_index, col])
        raise ParseError(
            row_index,
            f"non-numeric {column} field {rows[row_index][LOSS_COLUMNS.index(column)]!r}",
            line_numbers[row_index],
        )

    return df_numeric.astype("float64").reset_index(drop=True)


class LossCSVReader:
    """
    Reads a loss CSV file from disk and parses it.

    File acquisition belongs to the caller (CLI or browser upload); this class
    only validates the path, reports file metadata and hands the decoded text to
    parse_loss_csv().
    """

    def __init__(self, file_path: Union[str, Path]) -> None:
        """
        Initialize the reader with a file path.

        Raises:
            FileNotFoundError: If the specified file does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"CSV file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")
        if not self.file_path.suffix.lower() == ".csv":
            logger.warning(f"File does not have .csv extension: {self.file_path}")

    def get_file_info(self) -> Dict[str, Any]:
        """
        Get name, size and modification time of the file.

        Raises:
            FileAccessError: If the file cannot be stat'ed
        """
        try:
            stat = self.file_path.stat()
        except OSError as e:
            raise FileAccessError(f"Error getting file info: {e}") from e
        return {
            "file_path": str(self.file_path),
            "file_name": self.file_path.name,
            "file_size": stat.st_size,
            "last_modified": datetime.fromtimestamp(stat.st_mtime).isoformat(
                timespec="seconds"
            ),
        }

    def read_bytes(self) -> bytes:
        """
        Read the raw file content.

        Raises:
            FileAccessError: If the file cannot be read
        """
        try:
            return self.file_path.read_bytes()
        except OSError as e:
            raise FileAccessError(f"Error reading CSV file: {e}") from e

    def read_text(self) -> str:
        """
        Read and decode the whole file.

        Raises:
            FileAccessError: If the file cannot be read
            ParseError: If the content is not valid UTF-8
        """
        return decode_loss_bytes(self.read_bytes())

    def log_file_info(self) -> None:
        info = self.get_file_info()
        logger.info(f"File name: {info['file_name']}")
        logger.info(f"File size: {info['file_size']}")
        logger.info(f"File last modified time: {info['last_modified']}")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        # No cleanup needed for this class
        pass
