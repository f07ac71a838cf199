"""Field mapping resolver: compiles a mapping into a per-record projection."""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import CompilationError, ErrorCode, TransformError
from ..models.mapping import (
    ConditionOperator,
    FieldDataType,
    FieldMapping,
    FieldValidation,
    ValidationRuleSet,
)
from ..models.record import ErrorType, FieldError
from .transformer import TransformEngine, TransformPipeline, coerce
from .validator import TYPE_CHECKS, CompiledRuleSet, ValidationEngine, is_empty

logger = logging.getLogger(__name__)

_INDEX_PATTERN = re.compile(r"^(\w+)\[(\d+)\]$")


def get_source_value(data: Dict[str, Any], path: str) -> Any:
    """
    Read a source value by exact key, falling back to dot notation.

    Column headers such as ``"Full Name"`` or ``"a.b"`` are matched
    verbatim first; ``customer.email`` and ``items[0]`` reach into
    nested JSON rows.
    """
    if path in data:
        return data[path]

    value: Any = data
    for part in path.split("."):
        if value is None:
            return None
        index_match = _INDEX_PATTERN.match(part)
        if index_match:
            key, index = index_match.groups()
            if isinstance(value, dict):
                value = value.get(key)
            if isinstance(value, list) and int(index) < len(value):
                value = value[int(index)]
            else:
                return None
        elif isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit():
            idx = int(part)
            value = value[idx] if idx < len(value) else None
        else:
            return None
    return value


@dataclass
class CompiledCondition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, raw: Dict[str, Any]) -> bool:
        actual = get_source_value(raw, self.field)
        op = self.operator

        if op == ConditionOperator.EXISTS:
            return not is_empty(actual)
        if op == ConditionOperator.NOT_EXISTS:
            return is_empty(actual)
        if op in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
            equal = actual == self.value or (actual is not None and str(actual) == str(self.value))
            return equal if op == ConditionOperator.EQUALS else not equal

        if isinstance(actual, (list, tuple)):
            contained = self.value in actual
        else:
            contained = actual is not None and str(self.value) in str(actual)
        return contained if op == ConditionOperator.CONTAINS else not contained


@dataclass
class CompiledField:
    """One compiled mapping entry."""
    source_field: str
    target_field: str
    data_type: FieldDataType
    required: bool
    default_value: Any
    pipeline: TransformPipeline
    condition: Optional[CompiledCondition] = None


@dataclass
class MappedRecord:
    """Result of running one raw row through the compiled mapping."""
    fields: Dict[str, Any] = field(default_factory=dict)
    errors: List[FieldError] = field(default_factory=list)
    warnings: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class CompiledMapping:
    """
    Executable form of a field mapping plus its validation rules.

    Built once per job by ``FieldMappingResolver.compile`` and applied to
    every row. Holds no per-record state.
    """

    def __init__(
        self,
        fields: List[CompiledField],
        rules: CompiledRuleSet,
        validator: ValidationEngine
    ):
        self.fields = fields
        self.rules = rules
        self.validator = validator

    @property
    def target_fields(self) -> List[str]:
        return [f.target_field for f in self.fields]

    def project(self, raw: Dict[str, Any]) -> MappedRecord:
        """Apply conditions, transforms and defaults to one raw row."""
        result = MappedRecord()

        for compiled in self.fields:
            if compiled.condition and not compiled.condition.evaluate(raw):
                continue

            value = get_source_value(raw, compiled.source_field)
            try:
                value = compiled.pipeline.apply(value)
            except TransformError as e:
                result.errors.append(FieldError(
                    field=compiled.target_field,
                    code=ErrorCode.TRANSFORMATION_FAILED,
                    message=f"Transform error: {e.message}",
                    value=value,
                    error_type=ErrorType.TRANSFORMATION,
                ))
                continue

            if is_empty(value) and compiled.default_value is not None:
                value = compiled.default_value
            if value is not None:
                result.fields[compiled.target_field] = value

        return result

    def validate(self, fields: Dict[str, Any]) -> List[FieldError]:
        return self.validator.validate(fields, self.rules)

    def coerce(self, fields: Dict[str, Any]) -> MappedRecord:
        """Convert validated values to their declared types."""
        result = MappedRecord(fields=dict(fields))
        for compiled in self.fields:
            name = compiled.target_field
            if name not in result.fields:
                continue
            try:
                result.fields[name] = coerce(result.fields[name], compiled.data_type)
            except TransformError as e:
                result.errors.append(FieldError(
                    field=name,
                    code=ErrorCode.TRANSFORMATION_FAILED,
                    message=e.message,
                    value=result.fields.pop(name),
                    error_type=ErrorType.TRANSFORMATION,
                ))
        return result

    def process(self, raw: Dict[str, Any]) -> MappedRecord:
        """
        Run a raw row through projection, validation and type coercion.

        Coercion only runs when no blocking error was found.
        """
        projected = self.project(raw)
        failed_fields = {e.field for e in projected.errors}

        for issue in self.validate(projected.fields):
            if issue.field in failed_fields:
                continue
            if issue.blocking:
                projected.errors.append(issue)
            else:
                projected.warnings.append(issue)

        if projected.errors:
            return projected

        coerced = self.coerce(projected.fields)
        coerced.warnings = projected.warnings
        return coerced


class FieldMappingResolver:
    """Compiles field mappings, reporting every configuration problem at once."""

    def __init__(
        self,
        transform_engine: Optional[TransformEngine] = None,
        validation_engine: Optional[ValidationEngine] = None
    ):
        self.transform_engine = transform_engine or TransformEngine()
        self.validation_engine = validation_engine or ValidationEngine()

    def compile(
        self,
        mapping: FieldMapping,
        rule_set: Optional[ValidationRuleSet] = None
    ) -> CompiledMapping:
        """
        Compile a mapping and rule set.

        Raises:
            CompilationError: Listing duplicate targets, unknown names,
                type/default mismatches and malformed rules
        """
        problems: List[str] = []
        compiled_fields: List[CompiledField] = []
        seen_targets: Dict[str, str] = {}

        if not len(mapping):
            problems.append("Field mapping has no fields")

        required_fields: List[str] = []
        field_types: Dict[str, FieldDataType] = {}
        field_validations: Dict[str, FieldValidation] = {}

        for source_field, rule in mapping:
            target = rule.target_field
            if not target:
                problems.append(f"Source field '{source_field}' has no target field")
                continue
            if target in seen_targets:
                problems.append(
                    f"Duplicate target field '{target}' "
                    f"(from '{seen_targets[target]}' and '{source_field}')"
                )
                continue
            seen_targets[target] = source_field

            try:
                data_type = FieldDataType(rule.data_type)
            except ValueError:
                problems.append(f"Unknown data type '{rule.data_type}' on field '{target}'")
                continue

            if rule.default_value is not None:
                mismatch = TYPE_CHECKS[data_type](rule.default_value)
                if mismatch:
                    problems.append(
                        f"Default value {rule.default_value!r} of field '{target}' "
                        f"is not a valid {data_type.value}"
                    )

            condition = None
            if rule.condition is not None:
                try:
                    operator = ConditionOperator(rule.condition.operator)
                except ValueError:
                    problems.append(
                        f"Unknown condition operator '{rule.condition.operator}' on field '{target}'"
                    )
                    operator = None
                if not rule.condition.field:
                    problems.append(f"Condition on field '{target}' names no source field")
                elif operator is not None:
                    condition = CompiledCondition(rule.condition.field, operator, rule.condition.value)

            try:
                pipeline = self.transform_engine.compile_pipeline(rule.transforms, target)
            except CompilationError as e:
                problems.extend(e.problems)
                pipeline = TransformPipeline()

            if rule.required:
                required_fields.append(target)
            field_types[target] = data_type
            if rule.validation is not None:
                field_validations[target] = rule.validation

            compiled_fields.append(CompiledField(
                source_field=source_field,
                target_field=target,
                data_type=data_type,
                required=rule.required,
                default_value=rule.default_value,
                pipeline=pipeline,
                condition=condition,
            ))

        if rule_set is not None:
            for name in rule_set.referenced_fields():
                if name not in seen_targets:
                    problems.append(f"Validation rule references unmapped field '{name}'")

        rules = CompiledRuleSet()
        try:
            rules = self.validation_engine.compile_rules(
                rule_set,
                required_fields=required_fields,
                field_types=field_types,
                field_validations=field_validations,
            )
        except CompilationError as e:
            problems.extend(e.problems)

        if problems:
            logger.error(f"Mapping compilation failed with {len(problems)} problem(s)")
            raise CompilationError(problems)

        logger.debug(f"Compiled mapping with {len(compiled_fields)} field(s)")
        return CompiledMapping(compiled_fields, rules, self.validation_engine)
