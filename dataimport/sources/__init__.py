"""Row sources feeding the import engine."""

from .base import RowSource, ListRowSource
from .files import CSVRowSource, JSONRowSource, open_file_source

__all__ = [
    "RowSource",
    "ListRowSource",
    "CSVRowSource",
    "JSONRowSource",
    "open_file_source",
]
