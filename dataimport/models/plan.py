"""Migration plan models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import uuid

from ..errors import InvalidStateTransition
from .record import ImportErrorEntry, utcnow, _isoformat, _parse_datetime
from .job import ProgressEntry


class MigrationStepType(str, Enum):
    """Kinds of work a migration step can perform."""
    IMPORT_BATCH = "import_batch"
    VERIFY = "verify"
    FIXUP_REFERENCES = "fixup_references"
    CLEANUP = "cleanup"

    @classmethod
    def parse(cls, name: Any) -> Optional["MigrationStepType"]:
        """Resolve a step type name, accepting hyphenated spellings."""
        if isinstance(name, cls):
            return name
        if not isinstance(name, str):
            return None
        try:
            return cls(name.strip().lower().replace("-", "_"))
        except ValueError:
            return None


class MigrationStepStatus(str, Enum):
    """Status of a single step."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class MigrationPlanStatus(str, Enum):
    """Status of a migration plan."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            MigrationPlanStatus.COMPLETED,
            MigrationPlanStatus.FAILED,
            MigrationPlanStatus.CANCELLED,
        )


PLAN_TRANSITIONS = {
    MigrationPlanStatus.PENDING: {
        MigrationPlanStatus.RUNNING, MigrationPlanStatus.CANCELLED, MigrationPlanStatus.FAILED,
    },
    MigrationPlanStatus.RUNNING: {
        MigrationPlanStatus.COMPLETED, MigrationPlanStatus.FAILED, MigrationPlanStatus.CANCELLED,
    },
}


@dataclass
class MigrationConfiguration:
    """Plan-wide execution settings."""
    parallel_processing: bool = True
    max_concurrency: int = 4
    retry_failed_steps: bool = False
    max_retries: int = 1
    custom_settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def concurrency(self) -> int:
        """Number of steps allowed to run at once."""
        if not self.parallel_processing:
            return 1
        return max(1, self.max_concurrency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parallelProcessing": self.parallel_processing,
            "maxConcurrency": self.max_concurrency,
            "retryFailedSteps": self.retry_failed_steps,
            "maxRetries": self.max_retries,
            "customSettings": self.custom_settings,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MigrationConfiguration":
        data = data or {}
        return cls(
            parallel_processing=bool(data.get("parallelProcessing", data.get("parallel_processing", True))),
            max_concurrency=int(data.get("maxConcurrency", data.get("max_concurrency", 4))),
            retry_failed_steps=bool(data.get("retryFailedSteps", data.get("retry_failed_steps", False))),
            max_retries=int(data.get("maxRetries", data.get("max_retries", 1))),
            custom_settings=data.get("customSettings", data.get("custom_settings")) or {},
        )


@dataclass
class MigrationStep:
    """A single step in a migration plan."""
    id: str
    type: MigrationStepType
    name: str = ""
    order: int = 0
    dependencies: List[str] = field(default_factory=list)
    configuration: Dict[str, Any] = field(default_factory=dict)
    status: MigrationStepStatus = MigrationStepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    attempts: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def skippable(self) -> bool:
        """Whether a failure of this step still lets the plan complete."""
        return bool(self.configuration.get("skippable", False))

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "order": self.order,
            "dependencies": self.dependencies,
            "configuration": self.configuration,
            "status": self.status.value,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "errorMessage": self.error_message,
            "attempts": self.attempts,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationStep":
        """
        Create from dictionary representation.

        Raises:
            ValueError: If the step type is not a known step type
        """
        step_type = MigrationStepType.parse(data.get("type"))
        if step_type is None:
            raise ValueError(f"Unknown migration step type: {data.get('type')!r}")
        return cls(
            id=str(data.get("id", "")),
            type=step_type,
            name=data.get("name", ""),
            order=data.get("order", 0),
            dependencies=list(data.get("dependencies", [])),
            configuration=dict(data.get("configuration") or {}),
            status=MigrationStepStatus(data.get("status", MigrationStepStatus.PENDING.value)),
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
            error_message=data.get("errorMessage"),
            attempts=data.get("attempts", 0),
            metadata=data.get("metadata") or {},
        )


@dataclass
class MigrationPlan:
    """A dependency-ordered set of migration steps."""
    tenant_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: str = ""
    source_system: str = ""
    steps: List[MigrationStep] = field(default_factory=list)
    configuration: MigrationConfiguration = field(default_factory=MigrationConfiguration)
    status: MigrationPlanStatus = MigrationPlanStatus.PENDING

    error_log: List[ImportErrorEntry] = field(default_factory=list)
    progress_log: List[ProgressEntry] = field(default_factory=list)

    # Old id -> new id, accumulated by import steps and read by fixup steps
    id_remap: Dict[str, Dict[str, str]] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def get_step(self, step_id: str) -> Optional[MigrationStep]:
        """Get a step by ID."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_counts(self) -> Dict[str, int]:
        """Number of steps per status."""
        counts = {status.value: 0 for status in MigrationStepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        return counts

    @property
    def progress_percentage(self) -> float:
        if not self.steps:
            return 100.0
        done = sum(
            1 for s in self.steps
            if s.status in (MigrationStepStatus.COMPLETED, MigrationStepStatus.FAILED, MigrationStepStatus.SKIPPED)
        )
        return round(done / len(self.steps) * 100, 2)

    def transition(self, status: MigrationPlanStatus) -> None:
        """
        Move the plan to a new status.

        Raises:
            InvalidStateTransition: If the plan cannot reach ``status``
        """
        if status not in PLAN_TRANSITIONS.get(self.status, set()):
            raise InvalidStateTransition(self.status.value, status.value)
        self.status = status
        self.updated_at = utcnow()
        if status == MigrationPlanStatus.RUNNING:
            self.started_at = self.updated_at
        if status.is_terminal:
            self.completed_at = self.updated_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted document shape."""
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "sourceSystem": self.source_system,
            "steps": [s.to_dict() for s in self.steps],
            "configuration": self.configuration.to_dict(),
            "status": self.status.value,
            "errorLog": [e.to_dict() for e in self.error_log],
            "progressLog": [p.to_dict() for p in self.progress_log],
            "idRemap": self.id_remap,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationPlan":
        """Create from the persisted document shape."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            tenant_id=data.get("tenantId", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            source_system=data.get("sourceSystem", ""),
            steps=[MigrationStep.from_dict(s) for s in data.get("steps", [])],
            configuration=MigrationConfiguration.from_dict(data.get("configuration")),
            status=MigrationPlanStatus(data.get("status", MigrationPlanStatus.PENDING.value)),
            error_log=[ImportErrorEntry.from_dict(e) for e in data.get("errorLog", [])],
            progress_log=[ProgressEntry.from_dict(p) for p in data.get("progressLog", [])],
            id_remap={k: dict(v) for k, v in (data.get("idRemap") or {}).items()},
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            updated_at=_parse_datetime(data.get("updatedAt")) or utcnow(),
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
            metadata=data.get("metadata") or {},
            version=data.get("version", 0),
        )
