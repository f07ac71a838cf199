"""Preview generator: read-only dry run over a bounded sample."""

import re
import json
import logging
from collections import Counter
from itertools import islice
from typing import Any, Dict, Iterable, List, Optional

from ..errors import CompilationError, ErrorCode
from ..models.mapping import FieldDataType, FieldMapping, ValidationRuleSet
from ..models.preview import ColumnStatistics, ImportIssue, PreviewResult, PreviewStatistics
from .resolver import FieldMappingResolver, get_source_value
from .validator import ValidationRules, is_empty

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 10

_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_DATE_PATTERN = re.compile(
    r"^(\d{4}-\d{1,2}-\d{1,2}([T ]\d{1,2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?"
    r"|\d{1,2}/\d{1,2}/\d{2,4})$"
)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class PreviewGenerator:
    """
    Produces header and type inference, sample rows and issue statistics.

    Never touches a store or writer. The same rows and mapping always give
    an identical ``PreviewResult``.
    """

    def __init__(
        self,
        resolver: Optional[FieldMappingResolver] = None,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        max_sample_values: int = 5,
        max_issues: int = 100
    ):
        self.resolver = resolver or FieldMappingResolver()
        self.sample_size = sample_size
        self.max_sample_values = max_sample_values
        self.max_issues = max_issues

    def generate(
        self,
        rows: Iterable[Dict[str, Any]],
        mapping: Optional[FieldMapping] = None,
        rule_set: Optional[ValidationRuleSet] = None,
        sample_size: Optional[int] = None,
        natural_key: Optional[str] = None
    ) -> PreviewResult:
        """
        Preview a sample of rows.

        Args:
            rows: Raw rows; only the first ``sample_size`` are read
            mapping: Field mapping to apply, or None for inference only
            rule_set: Job-level validation rules
            sample_size: Rows to read, defaults to the generator's setting
            natural_key: Target field used to flag duplicate rows

        Returns:
            PreviewResult
        """
        size = sample_size if sample_size is not None else self.sample_size
        sample = [dict(row) for row in islice(rows, max(size, 0))]

        headers = self._collect_headers(sample)
        column_stats = {name: self._column_statistics(name, sample) for name in headers}
        result = PreviewResult(
            headers=headers,
            detected_types={name: stats.type for name, stats in column_stats.items()},
            statistics=PreviewStatistics(total_rows=len(sample), column_stats=column_stats),
        )
        issues: List[ImportIssue] = []

        compiled = None
        if mapping is not None:
            try:
                compiled = self.resolver.compile(mapping, rule_set)
            except CompilationError as e:
                for problem in e.problems:
                    issues.append(ImportIssue(
                        type="error",
                        code=ErrorCode.VALIDATION_FAILED.value,
                        message=problem,
                        suggestion="Fix the field mapping before starting the import",
                    ))
            for source_field in mapping.source_fields:
                if not sample or source_field in headers:
                    continue
                if all(get_source_value(row, source_field) is None for row in sample):
                    issues.append(ImportIssue(
                        type="warning",
                        code=ErrorCode.VALIDATION_FAILED.value,
                        message=f"Mapped source field '{source_field}' not found in sample",
                        column=source_field,
                        suggestion=f"Check the column name; found: {', '.join(headers)}",
                    ))

        seen_keys: Dict[str, int] = {}
        for index, row in enumerate(sample):
            if all(is_empty(v) for v in row.values()):
                result.statistics.empty_rows += 1
                issues.append(ImportIssue(
                    type="warning",
                    code=ErrorCode.VALIDATION_FAILED.value,
                    message="Row is empty",
                    row=index,
                ))
                continue

            mapped_fields = row
            if compiled is not None:
                mapped = compiled.process(row)
                mapped_fields = mapped.fields
                result.sample_rows.append(mapped.fields)
                if mapped.errors:
                    result.statistics.invalid_rows += 1
                else:
                    result.statistics.valid_rows += 1
                for error in mapped.errors + mapped.warnings:
                    issues.append(ImportIssue(
                        type="error" if error.blocking else "warning",
                        code=error.code.value,
                        message=error.message,
                        row=index,
                        column=error.field,
                        value=error.value,
                    ))
            else:
                result.sample_rows.append(row)

            if natural_key and not is_empty(mapped_fields.get(natural_key)):
                key = _canonical(str(mapped_fields[natural_key]).lower())
            else:
                key = _canonical(row)
            if key in seen_keys:
                result.statistics.duplicate_rows += 1
                issues.append(ImportIssue(
                    type="warning",
                    code=ErrorCode.DUPLICATE_RECORD.value,
                    message=f"Row duplicates row {seen_keys[key]}",
                    row=index,
                    column=natural_key,
                ))
            else:
                seen_keys[key] = index

        result.issue_counts = dict(sorted(Counter(i.code for i in issues).items()))
        result.issues = issues[:self.max_issues]
        logger.debug(
            f"Previewed {len(sample)} rows: {result.statistics.valid_rows} valid, "
            f"{result.statistics.invalid_rows} invalid, {len(issues)} issues"
        )
        return result

    def _collect_headers(self, sample: List[Dict[str, Any]]) -> List[str]:
        """Column names in first-seen order."""
        headers: Dict[str, None] = {}
        for row in sample:
            for key in row:
                headers.setdefault(str(key), None)
        return list(headers)

    def _column_statistics(self, name: str, sample: List[Dict[str, Any]]) -> ColumnStatistics:
        values = [row.get(name) for row in sample]
        present = [v for v in values if not is_empty(v)]

        types = {self._infer_value_type(v) for v in present}
        stats = ColumnStatistics(
            name=name,
            type=self._determine_field_type(types),
            null_count=len(values) - len(present),
            unique_count=len({_canonical(v) for v in present}),
        )

        for value in present:
            if len(stats.sample_values) >= self.max_sample_values:
                break
            if value not in stats.sample_values:
                stats.sample_values.append(value)

        if not present:
            stats.issues.append("Column has no values in the sample")
        elif len(types) > 1:
            stats.issues.append(f"Mixed value types: {', '.join(sorted(types))}")
        return stats

    def _infer_value_type(self, value: Any) -> str:
        """Get the data type name for a single raw value."""
        if isinstance(value, bool):
            return FieldDataType.BOOLEAN.value
        elif isinstance(value, (int, float)):
            return FieldDataType.NUMBER.value
        elif isinstance(value, dict):
            return FieldDataType.JSON.value
        elif isinstance(value, list):
            return FieldDataType.ARRAY.value

        text = str(value).strip()
        if text.lower() in ("true", "false"):
            return FieldDataType.BOOLEAN.value
        if _INT_PATTERN.match(text) or _FLOAT_PATTERN.match(text):
            return FieldDataType.NUMBER.value
        if ValidationRules.email(text) is None:
            return FieldDataType.EMAIL.value
        if ValidationRules.url(text) is None:
            return FieldDataType.URL.value
        if _DATE_PATTERN.match(text):
            return FieldDataType.DATE.value
        if text[:1] in ("{", "[") and ValidationRules.json(text) is None:
            return FieldDataType.JSON.value
        return FieldDataType.STRING.value

    def _determine_field_type(self, types: set) -> str:
        """Determine the best field type from observed types."""
        if len(types) == 1:
            return next(iter(types))
        return FieldDataType.STRING.value
