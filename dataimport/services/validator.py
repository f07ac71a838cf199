"""Validation engine for mapped records."""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from enum import Enum
from datetime import date, datetime
from dateutil import parser as date_parser

from ..errors import CompilationError, ErrorCode
from ..models.mapping import FieldDataType, FieldValidation, ValidationRuleSet
from ..models.record import FieldError, IssueSeverity
from .transformer import TRUE_STRINGS, FALSE_STRINGS

logger = logging.getLogger(__name__)

CustomValidator = Callable[..., Any]


class ValidationKind(str, Enum):
    """Closed set of rule kinds a compiled rule set can hold."""
    REQUIRED = "required"
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    PATTERN = "pattern"
    MIN = "min"
    MAX = "max"
    ENUM = "enum"
    DATA_TYPE = "data_type"
    CUSTOM = "custom"


def is_empty(value: Any) -> bool:
    """Whether a value counts as absent for required checks."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().replace(",", ""))
    except ValueError:
        return None


class ValidationRules:
    """Format checks shared by declared data types and rule-set lists."""

    @staticmethod
    def email(value: Any) -> Optional[str]:
        """Validate email format."""
        email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
        if not re.match(email_pattern, str(value)):
            return "Invalid email format"
        return None

    @staticmethod
    def phone(value: Any) -> Optional[str]:
        """Validate phone number format."""
        # Remove common formatting
        digits = re.sub(r"[^\d+]", "", str(value))
        if len(digits) < 7 or len(digits) > 15:
            return "Invalid phone number length"
        return None

    @staticmethod
    def url(value: Any) -> Optional[str]:
        """Validate URL format."""
        url_pattern = r"^https?://[^\s/$.?#].[^\s]*$"
        if not re.match(url_pattern, str(value), re.IGNORECASE):
            return "Invalid URL format"
        return None

    @staticmethod
    def date(value: Any) -> Optional[str]:
        if isinstance(value, (date, datetime)):
            return None
        try:
            date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return "Invalid date"
        return None

    @staticmethod
    def number(value: Any) -> Optional[str]:
        if _as_number(value) is None:
            return "Value must be a number"
        return None

    @staticmethod
    def boolean(value: Any) -> Optional[str]:
        if isinstance(value, bool):
            return None
        if str(value).strip().lower() in TRUE_STRINGS | FALSE_STRINGS:
            return None
        return "Value must be a boolean"

    @staticmethod
    def string(value: Any) -> Optional[str]:
        if isinstance(value, (dict, list, tuple)):
            return "Value must be a string"
        return None

    @staticmethod
    def json(value: Any) -> Optional[str]:
        if isinstance(value, (dict, list)):
            return None
        try:
            json.loads(str(value))
        except json.JSONDecodeError:
            return "Invalid JSON"
        return None

    @staticmethod
    def array(value: Any) -> Optional[str]:
        if not isinstance(value, (list, tuple)):
            return "Value must be an array"
        return None

    @staticmethod
    def reference(value: Any) -> Optional[str]:
        if isinstance(value, (dict, list, tuple, bool)):
            return "Reference must be a scalar id"
        return None


TYPE_CHECKS: Dict[FieldDataType, Callable[[Any], Optional[str]]] = {
    FieldDataType.STRING: ValidationRules.string,
    FieldDataType.NUMBER: ValidationRules.number,
    FieldDataType.BOOLEAN: ValidationRules.boolean,
    FieldDataType.DATE: ValidationRules.date,
    FieldDataType.EMAIL: ValidationRules.email,
    FieldDataType.URL: ValidationRules.url,
    FieldDataType.PHONE: ValidationRules.phone,
    FieldDataType.JSON: ValidationRules.json,
    FieldDataType.ARRAY: ValidationRules.array,
    FieldDataType.REFERENCE: ValidationRules.reference,
}


@dataclass
class CompiledRule:
    """One rule bound to its field, argument and severity."""
    kind: ValidationKind
    field: str
    argument: Any = None
    severity: IssueSeverity = IssueSeverity.ERROR
    message: Optional[str] = None
    name: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CompiledRuleSet:
    """Rules grouped by target field, in declaration order."""
    rules: Dict[str, List[CompiledRule]] = field(default_factory=dict)

    def add(self, rule: CompiledRule) -> None:
        self.rules.setdefault(rule.field, []).append(rule)

    def for_field(self, name: str) -> List[CompiledRule]:
        return self.rules.get(name, [])

    def is_required(self, name: str) -> bool:
        return any(r.kind == ValidationKind.REQUIRED for r in self.for_field(name))


class ValidationEngine:
    """
    Validator for mapped records.

    Supports:
    - Required fields
    - Length bounds, regex patterns and numeric ranges
    - Enum membership
    - Declared data type and format checks
    - Custom predicates registered by the host
    """

    def __init__(self, custom_validators: Optional[Dict[str, CustomValidator]] = None):
        """Initialize the validator."""
        self._custom_validators: Dict[str, CustomValidator] = dict(custom_validators or {})

    def register_validator(self, name: str, func: CustomValidator) -> None:
        """Register a custom validation function."""
        self._custom_validators[name] = func

    @property
    def custom_validator_names(self) -> List[str]:
        return sorted(self._custom_validators)

    def compile_rules(
        self,
        rule_set: Optional[ValidationRuleSet] = None,
        required_fields: Iterable[str] = (),
        field_types: Optional[Dict[str, FieldDataType]] = None,
        field_validations: Optional[Dict[str, FieldValidation]] = None
    ) -> CompiledRuleSet:
        """
        Compile the job rule set plus per-field mapping rules.

        Args:
            rule_set: Job-level validation rules
            required_fields: Target fields the mapping marks required
            field_types: Declared data type per target field
            field_validations: Validation attached to mapping rules

        Returns:
            Compiled rules

        Raises:
            CompilationError: With every problem found
        """
        rule_set = rule_set or ValidationRuleSet()
        problems: List[str] = []
        compiled = CompiledRuleSet()

        required = list(dict.fromkeys(list(required_fields) + list(rule_set.required)))
        for name in required:
            compiled.add(CompiledRule(kind=ValidationKind.REQUIRED, field=name))

        for name, data_type in (field_types or {}).items():
            if data_type != FieldDataType.STRING:
                compiled.add(CompiledRule(
                    kind=ValidationKind.DATA_TYPE, field=name, argument=data_type,
                ))

        format_lists = (
            (rule_set.email, FieldDataType.EMAIL),
            (rule_set.phone, FieldDataType.PHONE),
            (rule_set.url, FieldDataType.URL),
            (rule_set.date, FieldDataType.DATE),
            (rule_set.number, FieldDataType.NUMBER),
        )
        for names, data_type in format_lists:
            for name in names:
                if (field_types or {}).get(name) == data_type:
                    continue
                compiled.add(CompiledRule(
                    kind=ValidationKind.DATA_TYPE, field=name, argument=data_type,
                ))

        validations: List[tuple] = list((field_validations or {}).items())
        validations.extend(rule_set.fields.items())
        for name, validation in validations:
            problems.extend(self._compile_field_validation(compiled, name, validation))

        for key, custom in rule_set.custom.items():
            name = custom.validator or key
            severity = self._parse_severity(custom.severity)
            if severity is None:
                problems.append(f"Unknown severity '{custom.severity}' for custom rule '{key}'")
                continue
            if name not in self._custom_validators:
                problems.append(f"Unknown custom validator '{name}' on field '{custom.field}'")
                continue
            compiled.add(CompiledRule(
                kind=ValidationKind.CUSTOM,
                field=custom.field,
                argument=self._custom_validators[name],
                severity=severity,
                message=custom.error_message or None,
                name=name,
                parameters=dict(custom.parameters),
            ))

        if problems:
            raise CompilationError(problems)
        return compiled

    def _compile_field_validation(
        self,
        compiled: CompiledRuleSet,
        name: str,
        validation: FieldValidation
    ) -> List[str]:
        """Add one field's declared rules, returning any problems."""
        problems = []
        severity = self._parse_severity(validation.severity)
        if severity is None:
            return [f"Unknown severity '{validation.severity}' on field '{name}'"]

        if validation.required and not compiled.is_required(name):
            compiled.add(CompiledRule(kind=ValidationKind.REQUIRED, field=name))

        if validation.min_length is not None:
            compiled.add(CompiledRule(ValidationKind.MIN_LENGTH, name, int(validation.min_length), severity))
        if validation.max_length is not None:
            compiled.add(CompiledRule(ValidationKind.MAX_LENGTH, name, int(validation.max_length), severity))
        if (validation.min_length is not None and validation.max_length is not None
                and validation.min_length > validation.max_length):
            problems.append(f"minLength exceeds maxLength on field '{name}'")

        if validation.pattern is not None:
            try:
                compiled.add(CompiledRule(
                    ValidationKind.PATTERN, name, re.compile(validation.pattern), severity,
                ))
            except re.error as e:
                problems.append(f"Invalid pattern '{validation.pattern}' on field '{name}': {e}")

        for kind, bound in ((ValidationKind.MIN, validation.min), (ValidationKind.MAX, validation.max)):
            if bound is None:
                continue
            number = _as_number(bound)
            if number is None:
                problems.append(f"Non-numeric {kind.value} bound on field '{name}'")
            else:
                compiled.add(CompiledRule(kind, name, number, severity))

        if validation.enum is not None:
            if not isinstance(validation.enum, list):
                problems.append(f"enum on field '{name}' must be a list")
            else:
                compiled.add(CompiledRule(ValidationKind.ENUM, name, list(validation.enum), severity))

        for custom_name in validation.custom:
            if custom_name not in self._custom_validators:
                problems.append(f"Unknown custom validator '{custom_name}' on field '{name}'")
                continue
            compiled.add(CompiledRule(
                kind=ValidationKind.CUSTOM,
                field=name,
                argument=self._custom_validators[custom_name],
                severity=severity,
                name=custom_name,
            ))

        return problems

    @staticmethod
    def _parse_severity(value: Any) -> Optional[IssueSeverity]:
        try:
            return IssueSeverity(str(value).lower())
        except ValueError:
            return None

    def validate(self, fields: Dict[str, Any], compiled: CompiledRuleSet) -> List[FieldError]:
        """
        Evaluate every rule against a target-field bag.

        Empty values are checked only by required rules, so a missing
        required field produces exactly one error.

        Returns:
            All field errors and warnings, empty when valid
        """
        errors: List[FieldError] = []

        for name, rules in compiled.rules.items():
            value = fields.get(name)
            empty = is_empty(value)
            for rule in rules:
                if rule.kind == ValidationKind.REQUIRED:
                    if empty:
                        errors.append(FieldError(
                            field=name,
                            code=ErrorCode.MISSING_REQUIRED_FIELD,
                            message=f"Required field '{name}' is missing",
                            value=value,
                        ))
                    continue
                if empty:
                    continue
                error = self._check(rule, value)
                if error is not None:
                    errors.append(error)

        return errors

    def _check(self, rule: CompiledRule, value: Any) -> Optional[FieldError]:
        """Evaluate one non-required rule against a present value."""
        kind = rule.kind
        code = ErrorCode.VALIDATION_FAILED
        message: Optional[str] = None

        if kind == ValidationKind.DATA_TYPE:
            message = TYPE_CHECKS[rule.argument](value)
            code = ErrorCode.INVALID_DATA_TYPE
            if message:
                message = f"{message} (expected {rule.argument.value})"

        elif kind == ValidationKind.MIN_LENGTH:
            if len(str(value)) < rule.argument:
                message = f"Value shorter than {rule.argument} characters"

        elif kind == ValidationKind.MAX_LENGTH:
            if len(str(value)) > rule.argument:
                message = f"Value exceeds max length of {rule.argument}"

        elif kind == ValidationKind.PATTERN:
            if not rule.argument.search(str(value)):
                message = f"Value does not match pattern '{rule.argument.pattern}'"

        elif kind in (ValidationKind.MIN, ValidationKind.MAX):
            number = _as_number(value)
            if number is None:
                message = "Value must be a number"
                code = ErrorCode.INVALID_DATA_TYPE
            elif kind == ValidationKind.MIN and number < rule.argument:
                message = f"Value must be at least {rule.argument:g}"
            elif kind == ValidationKind.MAX and number > rule.argument:
                message = f"Value must be at most {rule.argument:g}"

        elif kind == ValidationKind.ENUM:
            if value not in rule.argument and str(value) not in [str(v) for v in rule.argument]:
                message = f"Invalid enum value. Must be one of: {rule.argument}"

        elif kind == ValidationKind.CUSTOM:
            message = self._run_custom(rule, value)

        if message is None:
            return None
        return FieldError(
            field=rule.field,
            code=code,
            message=rule.message or message,
            value=value,
            severity=rule.severity,
        )

    def _run_custom(self, rule: CompiledRule, value: Any) -> Optional[str]:
        """Call a host predicate; False or a message string means failure."""
        try:
            result = rule.argument(value, **rule.parameters)
        except Exception as e:
            logger.warning(f"Custom validator '{rule.name}' raised on field '{rule.field}': {e}")
            return f"Custom validator '{rule.name}' raised: {e}"

        if isinstance(result, str):
            return result or None
        if result is False:
            return f"Custom validation '{rule.name}' failed"
        return None
