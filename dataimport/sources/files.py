"""CSV and JSON file row sources."""

import codecs
import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ..errors import UnsupportedFormatError
from .base import Row, RowSource

logger = logging.getLogger(__name__)

CSV_SUFFIXES = (".csv", ".tsv", ".txt")
JSON_SUFFIXES = (".json", ".jsonl", ".ndjson")
SNIFF_BYTES = 65536


class CSVRowSource(RowSource):
    """
    Row source for CSV files.

    Supports:
    - Delimiter sniffing when none is configured
    - Fallback to latin-1 when the start of the file is not valid in the given encoding
    - Whitespace stripping of values
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        encoding: str = "utf-8",
        delimiter: Optional[str] = None
    ):
        """
        Initialize the CSV source.

        Args:
            file_path: Path to the CSV file
            encoding: File encoding
            delimiter: CSV delimiter character, sniffed when None
        """
        self.file_path = Path(file_path)
        self.encoding = encoding
        self.delimiter = delimiter
        self._resolved_encoding: Optional[str] = None
        self._resolved_delimiter: Optional[str] = None

    def _resolve_format(self) -> None:
        """Pick encoding and delimiter from a bounded prefix of the file."""
        if self._resolved_encoding is not None:
            return

        with open(self.file_path, "rb") as f:
            head = f.read(SNIFF_BYTES)

        encoding = self.encoding
        try:
            # Not final: a multi-byte character may be cut at the prefix end
            sample = codecs.getincrementaldecoder(encoding)().decode(head, final=False)
        except UnicodeDecodeError:
            logger.warning(f"{encoding} decode failed, trying latin-1 for {self.file_path}")
            encoding = "latin-1"
            sample = head.decode(encoding)

        delimiter = self.delimiter
        if delimiter is None:
            try:
                delimiter = csv.Sniffer().sniff(sample[:8192], delimiters=",;\t|").delimiter
            except csv.Error:
                delimiter = ","

        self._resolved_encoding = encoding
        self._resolved_delimiter = delimiter

    def rows(self) -> Iterator[Row]:
        self._resolve_format()
        with open(self.file_path, "r", encoding=self._resolved_encoding, newline="") as f:
            reader = csv.DictReader(f, delimiter=self._resolved_delimiter)
            for row in reader:
                yield self._process_row(row)

    def _process_row(self, row: Dict[Optional[str], Any]) -> Row:
        """Drop overflow cells and strip values."""
        data: Row = {}
        for column, value in row.items():
            if column is None:
                continue
            if isinstance(value, str):
                value = value.strip()
            data[column.strip()] = value if value is not None else ""
        return data


class JSONRowSource(RowSource):
    """Row source for JSON arrays, wrapped JSON documents and JSON Lines files."""

    def __init__(self, file_path: Union[str, Path], encoding: str = "utf-8"):
        self.file_path = Path(file_path)
        self.encoding = encoding

    @property
    def is_json_lines(self) -> bool:
        return self.file_path.suffix.lower() in (".jsonl", ".ndjson")

    def rows(self) -> Iterator[Row]:
        if self.is_json_lines:
            yield from self._read_lines()
            return

        with open(self.file_path, "r", encoding=self.encoding) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise UnsupportedFormatError(f"Invalid JSON in {self.file_path}: {e}") from e

        for idx, item in enumerate(self._items(data)):
            yield self._check_item(item, idx)

    def _items(self, data: Any) -> List[Any]:
        # Handle different JSON structures
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ["data", "records", "items", "results"]:
                if key in data and isinstance(data[key], list):
                    return data[key]
            return [data]
        raise UnsupportedFormatError(f"Unexpected JSON structure in {self.file_path}")

    def _read_lines(self) -> Iterator[Row]:
        with open(self.file_path, "r", encoding=self.encoding) as f:
            idx = 0
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    item = json.loads(line)
                except json.JSONDecodeError as e:
                    raise UnsupportedFormatError(
                        f"Invalid JSON on line {line_num} of {self.file_path}: {e}"
                    ) from e
                yield self._check_item(item, idx)
                idx += 1

    def _check_item(self, item: Any, idx: int) -> Row:
        if not isinstance(item, dict):
            raise UnsupportedFormatError(f"Item {idx} in {self.file_path} is not an object")
        return item


def open_file_source(
    file_path: Union[str, Path],
    encoding: Optional[str] = None,
    delimiter: Optional[str] = None
) -> RowSource:
    """
    Pick a row source by file extension.

    Raises:
        UnsupportedFormatError: For extensions no source can read
    """
    path = Path(file_path)
    suffix = path.suffix.lower()
    if suffix in CSV_SUFFIXES:
        return CSVRowSource(path, encoding=encoding or "utf-8", delimiter=delimiter)
    if suffix in JSON_SUFFIXES:
        return JSONRowSource(path, encoding=encoding or "utf-8")
    raise UnsupportedFormatError(f"Unsupported file format: {suffix or path.name}")
