"""Per-record audit models and error log entries."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import uuid

from ..errors import ErrorCode, RecordStateError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class RecordStatus(str, Enum):
    """Outcome of one source row."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class ErrorType(str, Enum):
    """Category of an error log entry."""
    VALIDATION = "validation"
    TRANSFORMATION = "transformation"
    DUPLICATE = "duplicate"
    REFERENCE = "reference"
    SYSTEM = "system"
    NETWORK = "network"
    PERMISSION = "permission"


class ErrorSeverity(str, Enum):
    """Severity of an error log entry."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueSeverity(str, Enum):
    """Severity of a field-level validation issue."""
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"


@dataclass
class FieldError:
    """A validation or transformation problem on one target field."""
    field: str
    code: ErrorCode
    message: str
    value: Optional[Any] = None
    severity: IssueSeverity = IssueSeverity.ERROR
    error_type: ErrorType = ErrorType.VALIDATION

    @property
    def blocking(self) -> bool:
        """Whether this issue fails the record."""
        return self.severity != IssueSeverity.WARNING

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "field": self.field,
            "code": self.code.value,
            "message": self.message,
            "value": self.value,
            "severity": self.severity.value,
            "type": self.error_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldError":
        return cls(
            field=data.get("field", ""),
            code=ErrorCode(data.get("code", ErrorCode.VALIDATION_FAILED.value)),
            message=data.get("message", ""),
            value=data.get("value"),
            severity=IssueSeverity(data.get("severity", IssueSeverity.ERROR.value)),
            error_type=ErrorType(data.get("type", ErrorType.VALIDATION.value)),
        )


@dataclass
class ImportErrorEntry:
    """One entry of a job's or plan's append-only error log."""
    type: ErrorType
    code: ErrorCode
    message: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    row: Optional[int] = None
    column: Optional[str] = None
    value: Optional[Any] = None
    timestamp: datetime = field(default_factory=utcnow)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    suggestion: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "type": self.type.value,
            "code": self.code.value,
            "message": self.message,
            "row": self.row,
            "column": self.column,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "suggestion": self.suggestion,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportErrorEntry":
        """Create from dictionary representation."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            type=ErrorType(data.get("type", ErrorType.SYSTEM.value)),
            code=ErrorCode(data.get("code", ErrorCode.SYSTEM_ERROR.value)),
            message=data.get("message", ""),
            row=data.get("row"),
            column=data.get("column"),
            value=data.get("value"),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
            severity=ErrorSeverity(data.get("severity", ErrorSeverity.MEDIUM.value)),
            suggestion=data.get("suggestion"),
            context=data.get("context") or {},
        )

    @classmethod
    def from_field_error(cls, error: FieldError, row: int) -> "ImportErrorEntry":
        """Lift a record-scoped field error into the job error log."""
        if error.severity == IssueSeverity.WARNING:
            severity = ErrorSeverity.LOW
        elif error.severity == IssueSeverity.CRITICAL:
            severity = ErrorSeverity.CRITICAL
        else:
            severity = ErrorSeverity.MEDIUM
        return cls(
            type=error.error_type,
            code=error.code,
            message=error.message,
            row=row,
            column=error.field,
            value=error.value,
            severity=severity,
        )


@dataclass
class ImportRecord:
    """Audit trail for one source row of an import job."""
    job_id: str
    record_index: int
    raw_fields: Dict[str, Any]
    fields: Dict[str, Any] = field(default_factory=dict)
    status: RecordStatus = RecordStatus.PENDING
    validation_errors: List[FieldError] = field(default_factory=list)
    warnings: List[FieldError] = field(default_factory=list)
    target_entity_id: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    processed_at: Optional[datetime] = None

    def finalize(
        self,
        status: RecordStatus,
        target_entity_id: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Move the record out of ``pending``.

        Raises:
            RecordStateError: If the record already has a final status
        """
        if self.status != RecordStatus.PENDING:
            raise RecordStateError(
                f"Record {self.record_index} of job {self.job_id} is already {self.status.value}"
            )
        if status == RecordStatus.PENDING:
            raise RecordStateError("A record cannot be finalized as pending")
        self.status = status
        self.target_entity_id = target_entity_id
        self.error_message = error_message
        self.processed_at = utcnow()

    @property
    def is_valid(self) -> bool:
        """Check if record passed validation."""
        return not any(e.blocking for e in self.validation_errors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "importJobId": self.job_id,
            "recordIndex": self.record_index,
            "sourceData": self.raw_fields,
            "transformedData": self.fields,
            "status": self.status.value,
            "validationErrors": [e.to_dict() for e in self.validation_errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "targetId": self.target_entity_id,
            "errorMessage": self.error_message,
            "retryCount": self.retry_count,
            "processedAt": _isoformat(self.processed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportRecord":
        """Create from dictionary representation."""
        return cls(
            job_id=data.get("importJobId", ""),
            record_index=data.get("recordIndex", 0),
            raw_fields=data.get("sourceData") or {},
            fields=data.get("transformedData") or {},
            status=RecordStatus(data.get("status", RecordStatus.PENDING.value)),
            validation_errors=[FieldError.from_dict(e) for e in data.get("validationErrors", [])],
            warnings=[FieldError.from_dict(w) for w in data.get("warnings", [])],
            target_entity_id=data.get("targetId"),
            error_message=data.get("errorMessage"),
            retry_count=data.get("retryCount", 0),
            processed_at=_parse_datetime(data.get("processedAt")),
        )
