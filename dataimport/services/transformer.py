"""Transformation engine for field values."""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import date, datetime
from dateutil import parser as date_parser
from dateutil import tz

from ..errors import CompilationError, TransformError
from ..models.mapping import FieldDataType, FieldTransform, TransformType

logger = logging.getLogger(__name__)

TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
FALSE_STRINGS = {"false", "0", "no", "n", "off"}

REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


@dataclass
class CompiledTransform:
    """A transform resolved to its implementation with parameters bound."""
    type: TransformType
    parameters: Dict[str, Any]
    func: Callable[[Any, Dict[str, Any]], Any]

    def __call__(self, value: Any) -> Any:
        return self.func(value, self.parameters)


@dataclass
class TransformPipeline:
    """Ordered, compiled transforms for one field."""
    steps: List[CompiledTransform] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.steps)

    def apply(self, value: Any) -> Any:
        """
        Run every step in order.

        Raises:
            TransformError: If any step cannot handle the value
        """
        for step in self.steps:
            try:
                value = step(value)
            except TransformError:
                raise
            except (ValueError, TypeError, KeyError, IndexError, AttributeError, OverflowError) as e:
                raise TransformError(step.type.value, str(e)) from e
        return value


class TransformEngine:
    """
    Engine for compiling and applying field transforms.

    Supports:
    - String cleanup and case changes
    - Literal and regex replacement, regex extraction
    - Split/join between strings and arrays
    - Date reformatting with explicit timezones
    - JSON parsing
    - Lookup-table substitution
    """

    def __init__(
        self,
        lookup_tables: Optional[Dict[str, Dict[Any, Any]]] = None,
        default_timezone: Optional[str] = None,
        default_date_format: Optional[str] = None
    ):
        """
        Initialize the transform engine.

        Args:
            lookup_tables: Read-only name -> {value: replacement} tables
            default_timezone: Timezone for format_date steps that name none
            default_date_format: Output format for format_date steps that name none
        """
        self.lookup_tables = lookup_tables or {}
        self.default_timezone = default_timezone
        self.default_date_format = default_date_format
        self._builtin_transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[TransformType, Callable[[Any, Dict[str, Any]], Any]]:
        """Register all built-in transformation functions."""
        return {
            TransformType.TRIM: self._transform_trim,
            TransformType.LOWERCASE: self._transform_lowercase,
            TransformType.UPPERCASE: self._transform_uppercase,
            TransformType.CAPITALIZE: self._transform_capitalize,
            TransformType.REPLACE: self._transform_replace,
            TransformType.REGEX_REPLACE: self._transform_regex_replace,
            TransformType.REGEX_EXTRACT: self._transform_regex_extract,
            TransformType.SPLIT: self._transform_split,
            TransformType.JOIN: self._transform_join,
            TransformType.FORMAT_DATE: self._transform_format_date,
            TransformType.PARSE_JSON: self._transform_parse_json,
            TransformType.LOOKUP: self._transform_lookup,
        }

    def compile_pipeline(
        self,
        transforms: List[FieldTransform],
        field_name: str = ""
    ) -> TransformPipeline:
        """
        Resolve declared transforms into a pipeline.

        Args:
            transforms: Transforms in declared order
            field_name: Field the pipeline belongs to, used in messages

        Returns:
            Compiled pipeline

        Raises:
            CompilationError: With every problem found in the declaration
        """
        problems: List[str] = []
        steps: List[CompiledTransform] = []
        label = f" on field '{field_name}'" if field_name else ""

        for position, declared in enumerate(transforms):
            transform_type = TransformType.parse(declared.type)
            if transform_type is None:
                problems.append(f"Unknown transform '{declared.type}'{label}")
                continue

            if transform_type == TransformType.SPLIT and position != len(transforms) - 1:
                problems.append(f"Transform 'split'{label} must be the last step")

            parameters = dict(declared.parameters)
            problems.extend(
                f"{message}{label}"
                for message in self._check_parameters(transform_type, parameters)
            )
            steps.append(CompiledTransform(
                type=transform_type,
                parameters=parameters,
                func=self._builtin_transforms[transform_type],
            ))

        if problems:
            raise CompilationError(problems)
        return TransformPipeline(steps=steps)

    def _check_parameters(self, transform_type: TransformType, parameters: Dict[str, Any]) -> List[str]:
        """Validate parameters and pre-compile what can be compiled."""
        problems = []

        if transform_type in (TransformType.REGEX_REPLACE, TransformType.REGEX_EXTRACT):
            pattern = parameters.get("pattern")
            if not isinstance(pattern, str):
                problems.append(f"Transform '{transform_type.value}' requires a 'pattern' parameter")
            else:
                flags = 0
                for flag in str(parameters.get("flags", "")):
                    if flag not in REGEX_FLAGS:
                        problems.append(f"Unknown regex flag '{flag}'")
                        continue
                    flags |= REGEX_FLAGS[flag]
                try:
                    parameters["_compiled"] = re.compile(pattern, flags)
                except re.error as e:
                    problems.append(f"Invalid regex '{pattern}': {e}")

        elif transform_type == TransformType.REPLACE:
            if self._param(parameters, "search", "from") is None:
                problems.append("Transform 'replace' requires a 'search' parameter")

        elif transform_type == TransformType.LOOKUP:
            table = parameters.get("table")
            if table not in self.lookup_tables:
                problems.append(f"Unknown lookup table '{table}'")

        elif transform_type == TransformType.FORMAT_DATE:
            for key in ("timezone", "source_timezone"):
                zone = parameters.get(key)
                if key == "timezone" and zone is None:
                    zone = self.default_timezone
                    if zone is not None:
                        parameters["timezone"] = zone
                if zone is not None and tz.gettz(zone) is None:
                    problems.append(f"Unknown timezone '{zone}'")
            if "output_format" not in parameters and "format" not in parameters and self.default_date_format:
                parameters["output_format"] = self.default_date_format

        return problems

    @staticmethod
    def _param(parameters: Dict[str, Any], *names: str, default: Any = None) -> Any:
        for name in names:
            if name in parameters:
                return parameters[name]
        return default

    # Built-in transform functions

    def _transform_trim(self, value: Any, params: Dict) -> Any:
        """Strip surrounding whitespace."""
        if isinstance(value, str):
            return value.strip()
        return value

    def _transform_lowercase(self, value: Any, params: Dict) -> Any:
        """Convert to lowercase."""
        if value is None:
            return None
        return str(value).lower()

    def _transform_uppercase(self, value: Any, params: Dict) -> Any:
        """Convert to uppercase."""
        if value is None:
            return None
        return str(value).upper()

    def _transform_capitalize(self, value: Any, params: Dict) -> Any:
        """Uppercase the first character, lowercase the rest."""
        if value is None:
            return None
        return str(value).capitalize()

    def _transform_replace(self, value: Any, params: Dict) -> Any:
        """Replace a literal substring."""
        if value is None:
            return None
        search = str(self._param(params, "search", "from"))
        replacement = str(self._param(params, "replacement", "to", default=""))
        return str(value).replace(search, replacement)

    def _transform_regex_replace(self, value: Any, params: Dict) -> Any:
        if value is None:
            return None
        return params["_compiled"].sub(str(params.get("replacement", "")), str(value))

    def _transform_regex_extract(self, value: Any, params: Dict) -> Any:
        """Return the first capture group, or the whole match without groups."""
        if value is None:
            return None
        match = params["_compiled"].search(str(value))
        if not match:
            return None
        if match.re.groups:
            return match.group(int(params.get("group", 1)))
        return match.group(0)

    def _transform_split(self, value: Any, params: Dict) -> Any:
        """Split a string into an array."""
        if value is None or isinstance(value, list):
            return value
        delimiter = self._param(params, "delimiter", "separator", default=",")
        parts = str(value).split(delimiter)
        if params.get("strip", True):
            parts = [p.strip() for p in parts]
        if params.get("drop_empty", True):
            parts = [p for p in parts if p != ""]
        return parts

    def _transform_join(self, value: Any, params: Dict) -> Any:
        """Join an array into a string."""
        if not isinstance(value, (list, tuple)):
            return value
        separator = self._param(params, "separator", "delimiter", default=", ")
        return str(separator).join("" if v is None else str(v) for v in value)

    def _transform_format_date(self, value: Any, params: Dict) -> Any:
        """Reformat a date from its source format into the output format."""
        if value is None or value == "":
            return value

        if isinstance(value, datetime):
            dt = value
        elif isinstance(value, date):
            dt = datetime(value.year, value.month, value.day)
        else:
            input_format = self._param(params, "input_format", "source_format")
            if input_format:
                dt = datetime.strptime(str(value).strip(), input_format)
            else:
                try:
                    dt = date_parser.parse(str(value).strip())
                except (ValueError, OverflowError) as e:
                    raise TransformError("format_date", f"Unparseable date {value!r}") from e

        target_zone = params.get("timezone")
        if target_zone:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=tz.gettz(params.get("source_timezone") or "UTC"))
            dt = dt.astimezone(tz.gettz(target_zone))

        output_format = self._param(params, "output_format", "format", default="%Y-%m-%d")
        if output_format == "iso":
            return dt.isoformat()
        return dt.strftime(output_format)

    def _transform_parse_json(self, value: Any, params: Dict) -> Any:
        if not isinstance(value, str):
            return value
        if not value.strip():
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise TransformError("parse_json", f"Invalid JSON: {e.msg}") from e

    def _transform_lookup(self, value: Any, params: Dict) -> Any:
        """Substitute a value from a lookup table."""
        if value is None:
            return params.get("default")
        table = self.lookup_tables[params["table"]]
        if value in table:
            return table[value]
        key = str(value)
        if key in table:
            return table[key]
        if params.get("case_insensitive"):
            lowered = key.lower()
            for candidate, replacement in table.items():
                if str(candidate).lower() == lowered:
                    return replacement
        if params.get("keep_unmatched"):
            return value
        return params.get("default")


def coerce(value: Any, data_type: FieldDataType) -> Any:
    """
    Convert a validated value to its declared type.

    Raises:
        TransformError: If the value cannot be represented as ``data_type``
    """
    if value is None:
        return None

    if data_type == FieldDataType.NUMBER:
        if isinstance(value, bool):
            raise TransformError("coerce", f"Boolean {value!r} is not a number")
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip().replace(",", "")
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError as e:
            raise TransformError("coerce", f"{value!r} is not a number") from e

    if data_type == FieldDataType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
        raise TransformError("coerce", f"{value!r} is not a boolean")

    if data_type == FieldDataType.JSON and isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise TransformError("coerce", f"Invalid JSON: {e.msg}") from e

    if data_type == FieldDataType.ARRAY and isinstance(value, tuple):
        return list(value)

    return value
