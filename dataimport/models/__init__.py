"""Data models for the import engine."""

from .mapping import (
    FieldDataType,
    TransformType,
    ConditionOperator,
    FieldCondition,
    FieldTransform,
    FieldValidation,
    FieldMappingRule,
    FieldMapping,
    CustomRule,
    ValidationRuleSet,
)
from .record import (
    RecordStatus,
    ErrorType,
    ErrorSeverity,
    IssueSeverity,
    FieldError,
    ImportErrorEntry,
    ImportRecord,
)
from .job import (
    ImportJobStatus,
    ImportSourceType,
    ImportDataType,
    ImportStage,
    ImportConfiguration,
    ProgressEntry,
    ImportJob,
)
from .plan import (
    MigrationStepType,
    MigrationStepStatus,
    MigrationPlanStatus,
    MigrationConfiguration,
    MigrationStep,
    MigrationPlan,
)
from .preview import (
    ColumnStatistics,
    ImportIssue,
    PreviewStatistics,
    PreviewResult,
)
from .template import ImportTemplate

__all__ = [
    "FieldDataType",
    "TransformType",
    "ConditionOperator",
    "FieldCondition",
    "FieldTransform",
    "FieldValidation",
    "FieldMappingRule",
    "FieldMapping",
    "CustomRule",
    "ValidationRuleSet",
    "RecordStatus",
    "ErrorType",
    "ErrorSeverity",
    "IssueSeverity",
    "FieldError",
    "ImportErrorEntry",
    "ImportRecord",
    "ImportJobStatus",
    "ImportSourceType",
    "ImportDataType",
    "ImportStage",
    "ImportConfiguration",
    "ProgressEntry",
    "ImportJob",
    "MigrationStepType",
    "MigrationStepStatus",
    "MigrationPlanStatus",
    "MigrationConfiguration",
    "MigrationStep",
    "MigrationPlan",
    "ColumnStatistics",
    "ImportIssue",
    "PreviewStatistics",
    "PreviewResult",
    "ImportTemplate",
]
