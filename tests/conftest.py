"""
Shared test fixtures for the import engine test suite.
"""

import pytest
from typing import Any, Dict, List

from dataimport.executor import BatchImportExecutor
from dataimport.models.job import ImportConfiguration, ImportDataType, ImportJob
from dataimport.models.mapping import FieldMapping, ValidationRuleSet
from dataimport.repositories.memory import MemoryJobStore, MemoryRecordWriter
from dataimport.settings import EngineSettings


TENANT = "tenant-a"


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class HookWriter(MemoryRecordWriter):
    """Runs ``hook`` once, right after the first successful create."""

    def __init__(self):
        super().__init__()
        self.hook = None

    async def create(self, entity_type, fields):
        entity_id = await super().create(entity_type, fields)
        if self.hook is not None:
            hook, self.hook = self.hook, None
            await hook()
        return entity_id


# ============================================================================
# ENGINE FIXTURES
# ============================================================================

@pytest.fixture
def settings() -> EngineSettings:
    """Engine limits independent of the environment."""
    return EngineSettings(
        default_batch_size=200,
        max_records=1000,
        max_concurrent_jobs=2,
        error_page_size=50,
    )


@pytest.fixture
def store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def writer() -> MemoryRecordWriter:
    return MemoryRecordWriter()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(store, writer, settings, sleeper) -> BatchImportExecutor:
    return BatchImportExecutor(store, writer, settings=settings, sleep=sleeper)


# ============================================================================
# MAPPING AND DATA FIXTURES
# ============================================================================

@pytest.fixture
def customer_mapping_data() -> Dict[str, Any]:
    """Customer CSV columns mapped to customer fields."""
    return {
        "Email": {
            "targetField": "email",
            "required": True,
            "dataType": "email",
            "transform": ["trim", "lowercase"],
        },
        "Full Name": {
            "targetField": "name",
            "transform": ["trim"],
        },
    }


@pytest.fixture
def customer_mapping(customer_mapping_data) -> FieldMapping:
    return FieldMapping.from_dict(customer_mapping_data)


@pytest.fixture
def customer_rows() -> List[Dict[str, Any]]:
    return [
        {"Email": "  JANE@EXAMPLE.COM ", "Full Name": "Jane Doe"},
        {"Email": "john@example.com", "Full Name": " John Smith "},
        {"Email": "ana@example.com", "Full Name": "Ana Lima"},
        {"Email": "li@example.com", "Full Name": "Li Wei"},
        {"Email": "sam@example.com", "Full Name": "Sam Park"},
    ]


@pytest.fixture
def job_factory(customer_mapping):
    """Build unsaved customer import jobs."""
    def factory(
        tenant_id: str = TENANT,
        mapping: FieldMapping = None,
        rules: ValidationRuleSet = None,
        import_type: ImportDataType = ImportDataType.CUSTOMERS,
        **config
    ) -> ImportJob:
        return ImportJob(
            tenant_id=tenant_id,
            name="Customer import",
            import_type=import_type,
            field_mapping=mapping or customer_mapping,
            validation_rules=rules or ValidationRuleSet(),
            configuration=ImportConfiguration(**config),
        )
    return factory
