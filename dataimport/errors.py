"""Exception hierarchy for the import engine."""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Stable machine-readable error codes shared by every error tier."""
    VALIDATION_FAILED = "validation-failed"
    DUPLICATE_RECORD = "duplicate-record"
    MISSING_REQUIRED_FIELD = "missing-required-field"
    INVALID_DATA_TYPE = "invalid-data-type"
    REFERENCE_NOT_FOUND = "reference-not-found"
    TRANSFORMATION_FAILED = "transformation-failed"
    SYSTEM_ERROR = "system-error"
    NETWORK_ERROR = "network-error"
    PERMISSION_DENIED = "permission-denied"
    FILE_TOO_LARGE = "file-too-large"
    UNSUPPORTED_FORMAT = "unsupported-format"


class ImportEngineError(Exception):
    """Base class for all engine errors."""

    code: ErrorCode = ErrorCode.SYSTEM_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class CompilationError(ImportEngineError):
    """
    A field mapping or validation rule set could not be compiled.

    Raised once, before any record is touched. ``problems`` lists every
    defect found so the caller can fix the configuration in one pass.
    """

    code = ErrorCode.VALIDATION_FAILED

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        summary = "; ".join(self.problems)
        super().__init__(f"Invalid mapping configuration: {summary}")

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "problems": self.problems}


class TransformError(ImportEngineError):
    """A single transform could not be applied to a value."""

    code = ErrorCode.TRANSFORMATION_FAILED

    def __init__(self, transform: str, message: str):
        self.transform = transform
        super().__init__(f"{transform}: {message}")


class InvalidStateTransition(ImportEngineError):
    """A job or plan was asked to move to a status it cannot reach."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot transition from '{current}' to '{requested}'")


class RecordStateError(ImportEngineError):
    """An import record was modified after it left the pending state."""


class JobNotFoundError(ImportEngineError):
    """No job with the given id exists for the tenant."""

    def __init__(self, tenant_id: str, job_id: str):
        self.tenant_id = tenant_id
        self.job_id = job_id
        super().__init__(f"Import job not found: {job_id}")


class PlanNotFoundError(ImportEngineError):
    """No migration plan with the given id exists for the tenant."""

    def __init__(self, tenant_id: str, plan_id: str):
        self.tenant_id = tenant_id
        self.plan_id = plan_id
        super().__init__(f"Migration plan not found: {plan_id}")


class TemplateNotFoundError(ImportEngineError):
    """No import template with the given id exists for the tenant."""

    def __init__(self, tenant_id: str, template_id: str):
        self.tenant_id = tenant_id
        self.template_id = template_id
        super().__init__(f"Import template not found: {template_id}")


class ConcurrencyError(ImportEngineError):
    """A conditional update lost against another writer of the same document."""

    def __init__(self, document_id: str, expected_version: int, actual_version: int):
        self.document_id = document_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Document {document_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class PlanValidationError(ImportEngineError):
    """A migration plan has unknown dependencies, duplicate ids or a cycle."""

    code = ErrorCode.VALIDATION_FAILED


class UnsupportedFormatError(ImportEngineError):
    """A row source cannot read the given file format."""

    code = ErrorCode.UNSUPPORTED_FORMAT


class RepositoryError(ImportEngineError):
    """Base class for failures reported by a record writer or store."""


class TransientRepositoryError(RepositoryError):
    """A repository call failed in a way that may succeed if retried."""

    code = ErrorCode.NETWORK_ERROR


class PermanentRepositoryError(RepositoryError):
    """A repository call failed and retrying will not help."""

    code = ErrorCode.SYSTEM_ERROR


class PermissionDeniedError(PermanentRepositoryError):
    """The repository refused the write for the tenant's credentials."""

    code = ErrorCode.PERMISSION_DENIED


class JobAlreadyRunningError(ImportEngineError):
    """An executor in this process is already running the job."""

    def __init__(self, tenant_id: str, job_id: str):
        self.tenant_id = tenant_id
        self.job_id = job_id
        super().__init__(f"Import job {job_id} is already running")
