#!/usr/bin/env python3
"""
CSV Table Reader
Loads delimited UTF-8 tables into DataFrames with canonical column names and
strict row-shape validation.
"""

import csv
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from .errors import FileAccessError, ParseError

logger = logging.getLogger(__name__)

_NAME_SEPARATORS = re.compile(r"[\s.\-]+")


def normalize_column_name(name: Any) -> str:
    """
    Return the canonical form of a column name.

    Canonical form: surrounding whitespace stripped, lower-cased, and every run
    of whitespace, dots or hyphens replaced by a single underscore.

    Example:
      " Hierarchy tokens.noTS " -> "hierarchy_tokens_nots"
    """
    text = str(name).strip().lower()
    return _NAME_SEPARATORS.sub("_", text)


class CSVTableReader:
    """
    Reader for a single delimited table file.

    The file is validated line by line (every record must have as many fields as
    the header) before pandas parses it, so ragged rows fail loudly instead of
    being padded with missing values.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        delimiter: str = ",",
        encoding: str = "utf-8-sig",
    ) -> None:
        """
        Initialize the reader with a file path.

        Args:
            file_path: Path to the delimited file
            delimiter: Single-character field delimiter
            encoding: Text encoding; the default strips a UTF-8 byte order mark

        Raises:
            FileAccessError: If the path does not exist or is not a file
        """
        self.file_path = Path(file_path)
        self.delimiter = delimiter
        self.encoding = encoding
        if not self.file_path.exists():
            raise FileAccessError(f"CSV file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")
        if self.file_path.suffix.lower() not in (".csv", ".tsv", ".txt"):
            logger.warning(
                "File does not have a delimited-text extension: %s", self.file_path
            )

    def validate_shape(self) -> List[str]:
        """
        Check that every non-blank record has the same field count as the header.

        Returns:
            List[str]: The raw header fields

        Raises:
            ParseError: If the file has no header or a record has the wrong field count
            FileAccessError: If the file cannot be read
        """
        try:
            with self.file_path.open("r", encoding=self.encoding, newline="") as handle:
                reader = csv.reader(handle, delimiter=self.delimiter)
                header: Optional[List[str]] = None
                for row in reader:
                    if not row:
                        continue
                    if header is None:
                        header = row
                        continue
                    if len(row) != len(header):
                        raise ParseError(
                            f"expected {len(header)} fields, found {len(row)}",
                            path=str(self.file_path),
                            line=reader.line_num,
                        )
        except UnicodeDecodeError as e:
            raise ParseError(f"not valid {self.encoding} text ({e})", path=str(self.file_path))
        except csv.Error as e:
            raise ParseError(str(e), path=str(self.file_path))
        except PermissionError as e:
            raise FileAccessError(f"Cannot read {self.file_path}: {e}")

        if header is None:
            raise ParseError("no header row found", path=str(self.file_path))
        return header

    def read(self) -> pd.DataFrame:
        """
        Read the whole table with canonical column names.

        Raises:
            ParseError: If the table is malformed or two headers normalize to the same name
            FileAccessError: If the file cannot be read
        """
        header = self.validate_shape()

        normalized = [normalize_column_name(col) for col in header]
        seen: Dict[str, str] = {}
        for raw, name in zip(header, normalized):
            if name in seen:
                raise ParseError(
                    f"columns '{seen[name]}' and '{raw}' both normalize to '{name}'",
                    path=str(self.file_path),
                    line=1,
                )
            seen[name] = raw

        try:
            df = pd.read_csv(
                self.file_path,
                sep=self.delimiter,
                encoding=self.encoding,
                header=0,
                skip_blank_lines=True,
            )
        except pd.errors.EmptyDataError:
            raise ParseError("no header row found", path=str(self.file_path))
        except pd.errors.ParserError as e:
            raise ParseError(str(e), path=str(self.file_path))
        except OSError as e:
            raise FileAccessError(f"Error reading CSV file {self.file_path}: {e}")

        df.columns = normalized
        logger.debug("Loaded %d rows x %d columns from %s", len(df), len(normalized), self.file_path)
        return df

    def get_file_info(self) -> Dict[str, Any]:
        """
        Get basic information about the file.

        Returns:
            Dict[str, Any]: path, size, row count, canonical columns and dtypes
        """
        df = self.read()
        return {
            "file_path": str(self.file_path),
            "file_size": self.file_path.stat().st_size,
            "total_rows": len(df),
            "columns": list(df.columns),
            "column_count": len(df.columns),
            "dtypes": {col: str(dtype) for col, dtype in df.dtypes.items()},
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        pass


def apply_header_map(df: pd.DataFrame, header_map: Dict[str, str]) -> pd.DataFrame:
    """
    Rename columns using an OLD -> NEW mapping.

    Keys are matched against canonical column names (the key itself is
    normalized first). Targets are used verbatim.
    Collision checks are performed before rename: two keys mapping to the same
    target, or a rename that would duplicate an existing column, raise ValueError.
    """
    if not header_map:
        return df

    value_to_keys: dict[str, list[str]] = {}
    for k, v in header_map.items():
        value_to_keys.setdefault(v.strip(), []).append(k)
    duplicate_targets = {tgt: keys for tgt, keys in value_to_keys.items() if len(keys) > 1}
    if duplicate_targets:
        parts = [f"target '{tgt}' specified by keys {keys}" for tgt, keys in duplicate_targets.items()]
        raise ValueError(
            "Conflicting header map targets (multiple OLD map to same NEW): " + "; ".join(parts)
        )

    lookup = {normalize_column_name(k): v.strip() for k, v in header_map.items()}
    original_columns = list(df.columns)
    remap = {col: lookup[col] for col in original_columns if col in lookup}

    new_names = [remap.get(col, col) for col in original_columns]
    dup_targets = {name for name in new_names if new_names.count(name) > 1}
    if dup_targets:
        conflicts: dict[str, list[str]] = {}
        for col in original_columns:
            target = remap.get(col, col)
            if target in dup_targets:
                conflicts.setdefault(target, []).append(col)
        msg_parts = [f"'{tgt}' <= columns {cols}" for tgt, cols in conflicts.items()]
        raise ValueError(
            "Header mapping would produce duplicate column names after rename: "
            + "; ".join(msg_parts)
        )

    missing = [k for k in header_map if normalize_column_name(k) not in original_columns]
    if missing:
        logger.warning(f"Header map keys not found in table columns: {missing}")

    if remap:
        logger.info(f"Applied header mappings: {remap}")
        return df.rename(columns=remap)
    return df


def load_table(
    path: Union[str, Path],
    delimiter: str = ",",
    header_map: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Load a delimited table with canonical column names.
    No prints; raises exceptions on error.
    """
    with CSVTableReader(path, delimiter=delimiter) as reader:
        df = reader.read()
    return apply_header_map(df, header_map or {})
