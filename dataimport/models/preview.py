"""Preview result models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json


@dataclass
class ColumnStatistics:
    """Inferred type and counts for one source column."""
    name: str
    type: str
    null_count: int = 0
    unique_count: int = 0
    sample_values: List[Any] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "nullCount": self.null_count,
            "uniqueCount": self.unique_count,
            "sampleValues": self.sample_values,
            "issues": self.issues,
        }


@dataclass
class ImportIssue:
    """A problem found in the preview sample."""
    type: str  # "warning" or "error"
    code: str
    message: str
    row: Optional[int] = None
    column: Optional[str] = None
    value: Optional[Any] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "code": self.code,
            "message": self.message,
            "row": self.row,
            "column": self.column,
            "value": self.value,
            "suggestion": self.suggestion,
        }


@dataclass
class PreviewStatistics:
    """Aggregate counts over the sample."""
    total_rows: int = 0
    empty_rows: int = 0
    duplicate_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    column_stats: Dict[str, ColumnStatistics] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "emptyRows": self.empty_rows,
            "duplicateRows": self.duplicate_rows,
            "validRows": self.valid_rows,
            "invalidRows": self.invalid_rows,
            "columnStats": {k: v.to_dict() for k, v in self.column_stats.items()},
        }


@dataclass
class PreviewResult:
    """
    Output of a preview run.

    Contains no timestamps or generated ids, so the same sample and
    mapping always serialize to the same bytes.
    """
    headers: List[str] = field(default_factory=list)
    detected_types: Dict[str, str] = field(default_factory=dict)
    sample_rows: List[Dict[str, Any]] = field(default_factory=list)
    statistics: PreviewStatistics = field(default_factory=PreviewStatistics)
    issues: List[ImportIssue] = field(default_factory=list)
    issue_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def has_errors(self) -> bool:
        return any(issue.type == "error" for issue in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headers": self.headers,
            "detectedTypes": self.detected_types,
            "sampleRows": self.sample_rows,
            "statistics": self.statistics.to_dict(),
            "issues": [i.to_dict() for i in self.issues],
            "issueCounts": self.issue_counts,
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        """Serialize deterministically."""
        return json.dumps(self.to_dict(), sort_keys=True, indent=indent, default=str)
