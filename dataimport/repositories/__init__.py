"""Repositories for jobs, plans and target entities."""

from .base import JobSignal, JobStore, RecordWriter
from .memory import MemoryJobStore, MemoryRecordWriter
from .api_writer import APIRecordWriter

__all__ = [
    "JobSignal",
    "JobStore",
    "RecordWriter",
    "MemoryJobStore",
    "MemoryRecordWriter",
    "APIRecordWriter",
]
