"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, model_validator
from enum import Enum
from datetime import datetime

from ..models.job import ImportJob
from ..models.plan import MigrationPlan
from ..models.template import ImportTemplate


class ImportDataTypeEnum(str, Enum):
    CUSTOMERS = "customers"
    TICKETS = "tickets"
    AGENTS = "agents"
    KNOWLEDGE_BASE = "knowledge_base"
    CUSTOM = "custom"


class ImportJobStatusEnum(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Request Models
class SourcePayload(BaseModel):
    """Rows inline, or a file readable by the server."""
    records: Optional[List[Dict[str, Any]]] = None
    file_path: Optional[str] = None
    encoding: Optional[str] = None
    delimiter: Optional[str] = None


class PreviewRequest(BaseModel):
    records: List[Dict[str, Any]]
    field_mapping: Optional[Dict[str, Any]] = None
    validation_rules: Optional[Dict[str, Any]] = None
    sample_size: Optional[int] = Field(default=None, ge=0)
    natural_key: Optional[str] = None


class JobCreate(BaseModel):
    name: str = ""
    description: str = ""
    template_id: Optional[str] = None
    import_type: Optional[ImportDataTypeEnum] = None
    source_type: Optional[str] = None
    field_mapping: Optional[Dict[str, Any]] = None
    validation_rules: Optional[Dict[str, Any]] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)
    file_name: Optional[str] = None
    total_records: Optional[int] = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def require_mapping_without_template(self) -> "JobCreate":
        if not self.template_id and (self.import_type is None or self.field_mapping is None):
            raise ValueError("import_type and field_mapping are required unless template_id is given")
        return self

    def to_document(self) -> Dict[str, Any]:
        """Convert to the persisted job document shape."""
        document = {
            "name": self.name,
            "description": self.description,
            "importType": self.import_type.value if self.import_type else None,
            "sourceType": self.source_type,
            "fieldMapping": self.field_mapping,
            "validationRules": self.validation_rules,
            "configuration": self.configuration,
            "fileName": self.file_name,
            "totalRecords": self.total_records,
            "metadata": self.metadata,
        }
        if self.template_id:
            document["templateId"] = self.template_id
        elif self.source_type is None:
            document["sourceType"] = "csv"
        return document


class PlanStepCreate(BaseModel):
    id: str
    type: str
    name: str = ""
    order: int = 0
    dependencies: List[str] = Field(default_factory=list)
    configuration: Dict[str, Any] = Field(default_factory=dict)


class PlanCreate(BaseModel):
    name: str
    description: str = ""
    source_system: str = ""
    steps: List[PlanStepCreate]
    configuration: Dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "sourceSystem": self.source_system,
            "steps": [step.model_dump() for step in self.steps],
            "configuration": self.configuration,
        }


class PlanStartRequest(BaseModel):
    sources: Dict[str, SourcePayload] = Field(default_factory=dict)


# Response Models
class JobResponse(BaseModel):
    id: str
    name: str
    description: str
    import_type: ImportDataTypeEnum
    source_type: str
    status: ImportJobStatusEnum
    total_records: Optional[int] = None
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    duplicate_records: int = 0
    skipped_records: int = 0
    progress_percentage: float = 0.0
    configuration: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    file_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    @classmethod
    def from_job(cls, job: ImportJob) -> "JobResponse":
        return cls(
            id=job.id,
            name=job.name,
            description=job.description,
            import_type=job.import_type.value,
            source_type=job.source_type.value,
            status=job.status.value,
            total_records=job.total_records,
            processed_records=job.processed_records,
            successful_records=job.successful_records,
            failed_records=job.failed_records,
            duplicate_records=job.duplicate_records,
            skipped_records=job.skipped_records,
            progress_percentage=job.progress_percentage,
            configuration=job.configuration.to_dict(),
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            file_name=job.file_name,
            metadata=job.metadata,
            version=job.version,
        )


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int


class ErrorPageResponse(BaseModel):
    errors: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int


class PlanStepResponse(BaseModel):
    id: str
    type: str
    name: str
    status: str
    dependencies: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    attempts: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str
    source_system: str
    status: str
    steps: List[PlanStepResponse]
    progress_percentage: float = 0.0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_plan(cls, plan: MigrationPlan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            source_system=plan.source_system,
            status=plan.status.value,
            steps=[
                PlanStepResponse(
                    id=step.id,
                    type=step.type.value,
                    name=step.name,
                    status=step.status.value,
                    dependencies=step.dependencies,
                    started_at=step.started_at,
                    completed_at=step.completed_at,
                    error_message=step.error_message,
                    attempts=step.attempts,
                    metadata=step.metadata,
                )
                for step in plan.steps
            ],
            progress_percentage=plan.progress_percentage,
            errors=[e.to_dict() for e in plan.error_log],
            created_at=plan.created_at,
            started_at=plan.started_at,
            completed_at=plan.completed_at,
            version=plan.version,
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]
    total: int


class TemplateCreate(BaseModel):
    name: str
    description: str = ""
    import_type: ImportDataTypeEnum
    source_type: str = "csv"
    field_mapping: Dict[str, Any]
    validation_rules: Optional[Dict[str, Any]] = None
    configuration: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_document(self) -> Dict[str, Any]:
        """Convert to the persisted template document shape."""
        return {
            "name": self.name,
            "description": self.description,
            "importType": self.import_type.value,
            "sourceType": self.source_type,
            "fieldMapping": self.field_mapping,
            "validationRules": self.validation_rules,
            "configuration": self.configuration,
            "metadata": self.metadata,
        }


class TemplateResponse(BaseModel):
    id: str
    name: str
    description: str
    import_type: ImportDataTypeEnum
    source_type: str
    field_mapping: Dict[str, Any]
    validation_rules: Dict[str, Any]
    configuration: Dict[str, Any]
    is_system: bool = False
    is_active: bool = True
    usage_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_template(cls, template: ImportTemplate) -> "TemplateResponse":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            import_type=template.import_type.value,
            source_type=template.source_type.value,
            field_mapping=template.field_mapping.to_dict(),
            validation_rules=template.validation_rules.to_dict(),
            configuration=template.configuration.to_dict(),
            is_system=template.is_system,
            is_active=template.is_active,
            usage_count=template.usage_count,
            created_at=template.created_at,
            updated_at=template.updated_at,
            version=template.version,
        )


class TemplateListResponse(BaseModel):
    templates: List[TemplateResponse]
    total: int
