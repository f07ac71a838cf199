"""Field mapping and validation rule models."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple
from enum import Enum
import json


class FieldDataType(str, Enum):
    """Declared data type of a target field."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    JSON = "json"
    ARRAY = "array"
    REFERENCE = "reference"


class TransformType(str, Enum):
    """Fixed vocabulary of value transforms."""
    TRIM = "trim"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"
    CAPITALIZE = "capitalize"
    REPLACE = "replace"
    REGEX_REPLACE = "regex_replace"
    REGEX_EXTRACT = "regex_extract"
    SPLIT = "split"
    JOIN = "join"
    FORMAT_DATE = "format_date"
    PARSE_JSON = "parse_json"
    LOOKUP = "lookup"

    @classmethod
    def parse(cls, name: Any) -> Optional["TransformType"]:
        """Resolve a transform name, accepting hyphenated spellings."""
        if not isinstance(name, str):
            return None
        try:
            return cls(name.strip().lower().replace("-", "_"))
        except ValueError:
            return None


class ConditionOperator(str, Enum):
    """Operators for conditional field inclusion."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in ``data`` (camelCase or snake_case spellings)."""
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass
class FieldCondition:
    """Include a target field only when another source field matches."""
    field: str
    operator: str = ConditionOperator.EXISTS.value
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"field": self.field, "operator": self.operator}
        if self.value is not None:
            result["value"] = self.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldCondition":
        operator = data.get("operator", ConditionOperator.EXISTS.value)
        if isinstance(operator, ConditionOperator):
            operator = operator.value
        return cls(
            field=data.get("field", ""),
            operator=operator,
            value=data.get("value"),
        )


@dataclass
class FieldTransform:
    """One step of a field's transform pipeline, as declared."""
    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type}
        if self.parameters:
            result["parameters"] = self.parameters
        return result

    @classmethod
    def from_value(cls, data: Any) -> "FieldTransform":
        """
        Build a transform from its declared form.

        Accepts a bare name (``"trim"``), a dict with ``type`` and
        ``parameters``, or a dict with ``type`` and inline parameters.
        """
        if isinstance(data, str):
            return cls(type=data)
        if isinstance(data, TransformType):
            return cls(type=data.value)
        if isinstance(data, dict):
            parameters = data.get("parameters")
            if parameters is None:
                parameters = {k: v for k, v in data.items() if k != "type"}
            return cls(type=str(data.get("type", "")), parameters=dict(parameters))
        return cls(type=str(data))


@dataclass
class FieldValidation:
    """Validation rule attached to a single target field."""
    required: Optional[bool] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    enum: Optional[List[Any]] = None
    custom: List[str] = field(default_factory=list)
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.required is not None:
            result["required"] = self.required
        if self.min_length is not None:
            result["minLength"] = self.min_length
        if self.max_length is not None:
            result["maxLength"] = self.max_length
        if self.pattern is not None:
            result["pattern"] = self.pattern
        if self.min is not None:
            result["min"] = self.min
        if self.max is not None:
            result["max"] = self.max
        if self.enum is not None:
            result["enum"] = self.enum
        if self.custom:
            result["custom"] = self.custom
        if self.severity != "error":
            result["severity"] = self.severity
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldValidation":
        custom = data.get("custom") or []
        if isinstance(custom, str):
            custom = [custom]
        return cls(
            required=data.get("required"),
            min_length=_pick(data, "minLength", "min_length"),
            max_length=_pick(data, "maxLength", "max_length"),
            pattern=data.get("pattern"),
            min=data.get("min"),
            max=data.get("max"),
            enum=data.get("enum"),
            custom=list(custom),
            severity=data.get("severity", "error"),
        )


@dataclass
class FieldMappingRule:
    """How one source column becomes one target field."""
    target_field: str
    required: bool = False
    data_type: str = FieldDataType.STRING.value
    default_value: Optional[Any] = None
    transforms: List[FieldTransform] = field(default_factory=list)
    validation: Optional[FieldValidation] = None
    condition: Optional[FieldCondition] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "targetField": self.target_field,
            "required": self.required,
            "dataType": self.data_type,
        }
        if self.default_value is not None:
            result["defaultValue"] = self.default_value
        if self.transforms:
            result["transform"] = [t.to_dict() for t in self.transforms]
        if self.validation is not None:
            result["validation"] = self.validation.to_dict()
        if self.condition is not None:
            result["condition"] = self.condition.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMappingRule":
        """Create from dictionary representation."""
        raw_transforms = _pick(data, "transform", "transforms", default=[]) or []
        if not isinstance(raw_transforms, list):
            raw_transforms = [raw_transforms]

        data_type = _pick(data, "dataType", "data_type", "type", default=FieldDataType.STRING.value)
        if isinstance(data_type, FieldDataType):
            data_type = data_type.value

        validation = data.get("validation")
        condition = data.get("condition")

        return cls(
            target_field=_pick(data, "targetField", "target_field", "target", default=""),
            required=bool(data.get("required", False)),
            data_type=data_type,
            default_value=_pick(data, "defaultValue", "default_value", "default"),
            transforms=[FieldTransform.from_value(t) for t in raw_transforms],
            validation=FieldValidation.from_dict(validation) if validation else None,
            condition=FieldCondition.from_dict(condition) if condition else None,
        )


@dataclass
class FieldMapping:
    """Ordered mapping of source field -> rule."""
    rules: Dict[str, FieldMappingRule] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Tuple[str, FieldMappingRule]]:
        return iter(self.rules.items())

    def __len__(self) -> int:
        return len(self.rules)

    @property
    def source_fields(self) -> List[str]:
        return list(self.rules.keys())

    @property
    def target_fields(self) -> List[str]:
        return [rule.target_field for rule in self.rules.values()]

    def to_dict(self) -> Dict[str, Any]:
        return {source: rule.to_dict() for source, rule in self.rules.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        return cls(rules={
            source: FieldMappingRule.from_dict(rule_data)
            for source, rule_data in (data or {}).items()
        })

    @classmethod
    def from_json_file(cls, file_path: str) -> "FieldMapping":
        """Load mapping from JSON file."""
        with open(file_path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)


@dataclass
class CustomRule:
    """A host-registered predicate applied to one target field."""
    field: str
    validator: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    error_message: str = ""
    severity: str = "critical"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "validator": self.validator,
            "parameters": self.parameters,
            "errorMessage": self.error_message,
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomRule":
        return cls(
            field=data.get("field", ""),
            validator=_pick(data, "validator", "function", "name", default=""),
            parameters=dict(data.get("parameters") or {}),
            error_message=_pick(data, "errorMessage", "error_message", default=""),
            severity=data.get("severity", "critical"),
        )


@dataclass
class ValidationRuleSet:
    """Job-level validation rules keyed by target field."""
    required: List[str] = field(default_factory=list)
    email: List[str] = field(default_factory=list)
    phone: List[str] = field(default_factory=list)
    url: List[str] = field(default_factory=list)
    date: List[str] = field(default_factory=list)
    number: List[str] = field(default_factory=list)
    fields: Dict[str, FieldValidation] = field(default_factory=dict)
    custom: Dict[str, CustomRule] = field(default_factory=dict)

    def referenced_fields(self) -> List[str]:
        """All target fields named anywhere in the rule set."""
        names: List[str] = []
        for group in (self.required, self.email, self.phone, self.url, self.date, self.number):
            names.extend(group)
        names.extend(self.fields.keys())
        names.extend(rule.field for rule in self.custom.values())
        return list(dict.fromkeys(names))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required": self.required,
            "email": self.email,
            "phone": self.phone,
            "url": self.url,
            "date": self.date,
            "number": self.number,
            "fields": {k: v.to_dict() for k, v in self.fields.items()},
            "custom": {k: v.to_dict() for k, v in self.custom.items()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValidationRuleSet":
        """Create from dictionary representation."""
        data = data or {}
        return cls(
            required=list(data.get("required", [])),
            email=list(data.get("email", [])),
            phone=list(data.get("phone", [])),
            url=list(data.get("url", [])),
            date=list(data.get("date", [])),
            number=list(data.get("number", [])),
            fields={k: FieldValidation.from_dict(v) for k, v in data.get("fields", {}).items()},
            custom={k: CustomRule.from_dict(v) for k, v in data.get("custom", {}).items()},
        )
