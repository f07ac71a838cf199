"""Import job models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import uuid

from ..errors import InvalidStateTransition
from .mapping import FieldMapping, ValidationRuleSet
from .record import ImportErrorEntry, utcnow, _isoformat, _parse_datetime


class ImportJobStatus(str, Enum):
    """Status of an import job. Values are part of the persisted contract."""
    PENDING = "pending"
    VALIDATING = "validating"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED)


JOB_TRANSITIONS = {
    ImportJobStatus.PENDING: {
        ImportJobStatus.VALIDATING, ImportJobStatus.CANCELLED, ImportJobStatus.FAILED,
    },
    ImportJobStatus.VALIDATING: {
        ImportJobStatus.PROCESSING, ImportJobStatus.CANCELLED, ImportJobStatus.FAILED,
    },
    ImportJobStatus.PROCESSING: {
        ImportJobStatus.PAUSED, ImportJobStatus.COMPLETED,
        ImportJobStatus.CANCELLED, ImportJobStatus.FAILED,
    },
    ImportJobStatus.PAUSED: {
        ImportJobStatus.PROCESSING, ImportJobStatus.CANCELLED, ImportJobStatus.FAILED,
    },
}


class ImportSourceType(str, Enum):
    """Where the rows came from: a file format or a named external system."""
    CSV = "csv"
    JSON = "json"
    XML = "xml"
    EXCEL = "excel"
    ZENDESK = "zendesk"
    FRESHDESK = "freshdesk"
    INTERCOM = "intercom"
    HELPSCOUT = "helpscout"
    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"
    JIRA = "jira"
    SLACK = "slack"
    CUSTOM = "custom"


class ImportDataType(str, Enum):
    """Target entity type of an import."""
    CUSTOMERS = "customers"
    TICKETS = "tickets"
    AGENTS = "agents"
    KNOWLEDGE_BASE = "knowledge_base"
    CUSTOM = "custom"


class ImportStage(str, Enum):
    """Stage reported in progress log entries."""
    VALIDATING = "validating"
    IMPORTING = "importing"
    FINALIZING = "finalizing"


# Natural key used for duplicate detection when the configuration names none
DEFAULT_NATURAL_KEYS = {
    ImportDataType.CUSTOMERS: "email",
    ImportDataType.AGENTS: "email",
}


@dataclass
class ImportConfiguration:
    """Per-job execution settings."""
    batch_size: int = 200
    skip_duplicates: bool = True
    update_existing: bool = False
    create_missing: bool = True
    natural_key: Optional[str] = None
    retry_failed_records: bool = True
    max_retries: int = 3
    retry_backoff: float = 0.5
    date_format: Optional[str] = None
    timezone: Optional[str] = None
    delimiter: Optional[str] = None
    encoding: Optional[str] = None
    custom_settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def detects_duplicates(self) -> bool:
        """Whether rows are checked against existing records by natural key."""
        return self.skip_duplicates or self.update_existing

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "batchSize": self.batch_size,
            "skipDuplicates": self.skip_duplicates,
            "updateExisting": self.update_existing,
            "createMissing": self.create_missing,
            "naturalKey": self.natural_key,
            "retryFailedRecords": self.retry_failed_records,
            "maxRetries": self.max_retries,
            "retryBackoff": self.retry_backoff,
            "dateFormat": self.date_format,
            "timezone": self.timezone,
            "delimiter": self.delimiter,
            "encoding": self.encoding,
            "customSettings": self.custom_settings,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ImportConfiguration":
        """Create from dictionary representation."""
        data = data or {}

        def pick(camel: str, snake: str, default: Any) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        return cls(
            batch_size=int(pick("batchSize", "batch_size", 200)),
            skip_duplicates=bool(pick("skipDuplicates", "skip_duplicates", True)),
            update_existing=bool(pick("updateExisting", "update_existing", False)),
            create_missing=bool(pick("createMissing", "create_missing", True)),
            natural_key=pick("naturalKey", "natural_key", None),
            retry_failed_records=bool(pick("retryFailedRecords", "retry_failed_records", True)),
            max_retries=int(pick("maxRetries", "max_retries", 3)),
            retry_backoff=float(pick("retryBackoff", "retry_backoff", 0.5)),
            date_format=pick("dateFormat", "date_format", None),
            timezone=data.get("timezone"),
            delimiter=data.get("delimiter"),
            encoding=data.get("encoding"),
            custom_settings=pick("customSettings", "custom_settings", {}) or {},
        )


@dataclass
class ProgressEntry:
    """One entry of a job's append-only progress log."""
    stage: ImportStage
    progress: float
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressEntry":
        return cls(
            stage=ImportStage(data.get("stage", ImportStage.IMPORTING.value)),
            progress=float(data.get("progress", 0.0)),
            message=data.get("message", ""),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
            details=data.get("details") or {},
        )


@dataclass
class ImportJob:
    """One bulk-load unit."""
    tenant_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: str = ""
    source_type: ImportSourceType = ImportSourceType.CSV
    import_type: ImportDataType = ImportDataType.CUSTOMERS
    status: ImportJobStatus = ImportJobStatus.PENDING

    # Counters
    total_records: Optional[int] = None
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    duplicate_records: int = 0
    skipped_records: int = 0

    # Rules
    field_mapping: FieldMapping = field(default_factory=FieldMapping)
    validation_rules: ValidationRuleSet = field(default_factory=ValidationRuleSet)
    configuration: ImportConfiguration = field(default_factory=ImportConfiguration)

    # Logs (the executor appends through the store and never loads these wholesale)
    error_log: List[ImportErrorEntry] = field(default_factory=list)
    progress_log: List[ProgressEntry] = field(default_factory=list)

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    file_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def natural_key(self) -> Optional[str]:
        """Target field used to detect existing records."""
        return self.configuration.natural_key or DEFAULT_NATURAL_KEYS.get(self.import_type)

    @property
    def progress_percentage(self) -> float:
        """Processed share of the total, 0-100."""
        if not self.total_records:
            return 100.0 if self.total_records == 0 else 0.0
        return round(min(self.processed_records / self.total_records, 1.0) * 100, 2)

    @property
    def counters_consistent(self) -> bool:
        """Check the counter invariant."""
        outcome_sum = (
            self.successful_records + self.failed_records
            + self.duplicate_records + self.skipped_records
        )
        if outcome_sum != self.processed_records:
            return False
        if self.total_records is not None and self.processed_records > self.total_records:
            return False
        return True

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def can_transition(self, status: ImportJobStatus) -> bool:
        return status in JOB_TRANSITIONS.get(self.status, set())

    def transition(self, status: ImportJobStatus) -> None:
        """
        Move the job to a new status.

        Raises:
            InvalidStateTransition: If the state machine does not allow the move
        """
        if not self.can_transition(status):
            raise InvalidStateTransition(self.status.value, status.value)
        self.status = status
        self.updated_at = utcnow()
        if status.is_terminal:
            self.completed_at = self.updated_at

    def apply_counts(
        self,
        successful: int = 0,
        failed: int = 0,
        duplicate: int = 0,
        skipped: int = 0
    ) -> None:
        """Merge one batch's outcome counts into the job counters."""
        if min(successful, failed, duplicate, skipped) < 0:
            raise ValueError("Record counters never decrease")
        self.successful_records += successful
        self.failed_records += failed
        self.duplicate_records += duplicate
        self.skipped_records += skipped
        self.processed_records += successful + failed + duplicate + skipped
        self.updated_at = utcnow()

    def to_dict(self, include_logs: bool = True) -> Dict[str, Any]:
        """Convert to the persisted document shape."""
        result = {
            "id": self.id,
            "tenantId": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "sourceType": self.source_type.value,
            "importType": self.import_type.value,
            "status": self.status.value,
            "totalRecords": self.total_records,
            "processedRecords": self.processed_records,
            "successfulRecords": self.successful_records,
            "failedRecords": self.failed_records,
            "duplicateRecords": self.duplicate_records,
            "skippedRecords": self.skipped_records,
            "fieldMapping": self.field_mapping.to_dict(),
            "validationRules": self.validation_rules.to_dict(),
            "configuration": self.configuration.to_dict(),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "fileName": self.file_name,
            "metadata": self.metadata,
            "version": self.version,
        }
        if include_logs:
            result["errorLog"] = [e.to_dict() for e in self.error_log]
            result["progressLog"] = [p.to_dict() for p in self.progress_log]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportJob":
        """Create from the persisted document shape."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            tenant_id=data.get("tenantId", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            source_type=ImportSourceType(data.get("sourceType", ImportSourceType.CSV.value)),
            import_type=ImportDataType(data.get("importType", ImportDataType.CUSTOMERS.value)),
            status=ImportJobStatus(data.get("status", ImportJobStatus.PENDING.value)),
            total_records=data.get("totalRecords"),
            processed_records=data.get("processedRecords", 0),
            successful_records=data.get("successfulRecords", 0),
            failed_records=data.get("failedRecords", 0),
            duplicate_records=data.get("duplicateRecords", 0),
            skipped_records=data.get("skippedRecords", 0),
            field_mapping=FieldMapping.from_dict(data.get("fieldMapping") or {}),
            validation_rules=ValidationRuleSet.from_dict(data.get("validationRules")),
            configuration=ImportConfiguration.from_dict(data.get("configuration")),
            error_log=[ImportErrorEntry.from_dict(e) for e in data.get("errorLog", [])],
            progress_log=[ProgressEntry.from_dict(p) for p in data.get("progressLog", [])],
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            updated_at=_parse_datetime(data.get("updatedAt")) or utcnow(),
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
            file_name=data.get("fileName"),
            metadata=data.get("metadata") or {},
            version=data.get("version", 0),
        )
