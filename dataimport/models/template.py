"""Reusable import templates."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from datetime import datetime
import uuid

from .job import ImportConfiguration, ImportDataType, ImportSourceType
from .mapping import FieldMapping, ValidationRuleSet
from .record import utcnow, _parse_datetime


@dataclass
class ImportTemplate:
    """
    A saved mapping, rule set and configuration that new jobs can start from.

    A job created from a template takes the template's values for anything
    its own document leaves out. Configuration keys are merged one by one,
    with the job's keys winning.
    """
    tenant_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    description: str = ""
    source_type: ImportSourceType = ImportSourceType.CSV
    import_type: ImportDataType = ImportDataType.CUSTOMERS
    field_mapping: FieldMapping = field(default_factory=FieldMapping)
    validation_rules: ValidationRuleSet = field(default_factory=ValidationRuleSet)
    configuration: ImportConfiguration = field(default_factory=ImportConfiguration)
    is_system: bool = False
    is_active: bool = True
    usage_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def job_document(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Build a job document from this template.

        Args:
            overrides: Job document whose non-empty values replace the template's

        Returns:
            Job document in the persisted camelCase shape
        """
        overrides = overrides or {}
        document = {
            "name": self.name,
            "description": self.description,
            "sourceType": self.source_type.value,
            "importType": self.import_type.value,
            "fieldMapping": self.field_mapping.to_dict(),
            "validationRules": self.validation_rules.to_dict(),
        }
        for key, value in overrides.items():
            if key == "configuration" or value is None:
                continue
            if key in ("fieldMapping", "validationRules", "name", "description") and not value:
                continue
            document[key] = value

        configuration = self.configuration.to_dict()
        configuration.update(overrides.get("configuration") or {})
        document["configuration"] = configuration

        metadata = dict(document.get("metadata") or {})
        metadata["templateId"] = self.id
        document["metadata"] = metadata
        return document

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted document shape."""
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "sourceType": self.source_type.value,
            "importType": self.import_type.value,
            "fieldMapping": self.field_mapping.to_dict(),
            "validationRules": self.validation_rules.to_dict(),
            "configuration": self.configuration.to_dict(),
            "isSystem": self.is_system,
            "isActive": self.is_active,
            "usageCount": self.usage_count,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportTemplate":
        """Create from the persisted document shape."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            tenant_id=data.get("tenantId", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            source_type=ImportSourceType(data.get("sourceType", ImportSourceType.CSV.value)),
            import_type=ImportDataType(data.get("importType", ImportDataType.CUSTOMERS.value)),
            field_mapping=FieldMapping.from_dict(data.get("fieldMapping") or {}),
            validation_rules=ValidationRuleSet.from_dict(data.get("validationRules")),
            configuration=ImportConfiguration.from_dict(data.get("configuration")),
            is_system=bool(data.get("isSystem", False)),
            is_active=bool(data.get("isActive", True)),
            usage_count=int(data.get("usageCount", 0)),
            metadata=data.get("metadata") or {},
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
            updated_at=_parse_datetime(data.get("updatedAt")) or utcnow(),
            version=data.get("version", 0),
        )
