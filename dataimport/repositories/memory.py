"""In-memory repository implementations."""

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from ..errors import (
    ConcurrencyError,
    JobNotFoundError,
    PermanentRepositoryError,
    PlanNotFoundError,
    TemplateNotFoundError,
)
from ..models.job import ImportJob, ImportJobStatus, ProgressEntry
from ..models.plan import MigrationPlan
from ..models.record import ImportErrorEntry, ImportRecord, RecordStatus, utcnow
from ..models.template import ImportTemplate
from .base import JobSignal, JobStore, RecordWriter

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


def _normalize(value: Any) -> str:
    return str(value).strip().lower()


class MemoryJobStore(JobStore):
    """
    Job store backed by dictionaries.

    Documents are kept in their serialized form so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._jobs: Dict[Key, Dict[str, Any]] = {}
        self._errors: Dict[Key, List[Dict[str, Any]]] = defaultdict(list)
        self._progress: Dict[Key, List[Dict[str, Any]]] = defaultdict(list)
        self._records: Dict[Key, Dict[int, Dict[str, Any]]] = defaultdict(dict)
        self._signals: Dict[Key, JobSignal] = {}
        self._plans: Dict[Key, Dict[str, Any]] = {}
        self._templates: Dict[Key, Dict[str, Any]] = {}

    # Jobs

    def _load_job(self, key: Key) -> ImportJob:
        job = ImportJob.from_dict(copy.deepcopy(self._jobs[key]))
        job.progress_log = [ProgressEntry.from_dict(p) for p in self._progress[key]]
        return job

    def _check_version(self, key: Key, expected_version: int) -> None:
        if key not in self._jobs:
            raise JobNotFoundError(*key)
        actual = self._jobs[key]["version"]
        if actual != expected_version:
            raise ConcurrencyError(key[1], expected_version, actual)

    def _write_job(self, job: ImportJob, expected_version: int) -> Key:
        key = (job.tenant_id, job.id)
        job.version = expected_version + 1
        job.updated_at = utcnow()
        self._jobs[key] = job.to_dict(include_logs=False)
        return key

    async def create_job(self, job: ImportJob) -> ImportJob:
        async with self._lock:
            key = (job.tenant_id, job.id)
            if key in self._jobs:
                raise ConcurrencyError(job.id, 0, self._jobs[key]["version"])
            self._write_job(job, 0)
            for entry in job.error_log:
                self._errors[key].append(entry.to_dict())
            for entry in job.progress_log:
                self._progress[key].append(entry.to_dict())
            return self._load_job(key)

    async def get_job(self, tenant_id: str, job_id: str) -> ImportJob:
        async with self._lock:
            key = (tenant_id, job_id)
            if key not in self._jobs:
                raise JobNotFoundError(tenant_id, job_id)
            return self._load_job(key)

    async def list_jobs(
        self,
        tenant_id: str,
        status: Optional[ImportJobStatus] = None
    ) -> List[ImportJob]:
        async with self._lock:
            jobs = [
                self._load_job(key) for key in self._jobs
                if key[0] == tenant_id
                and (status is None or self._jobs[key]["status"] == status.value)
            ]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def save_job(
        self,
        job: ImportJob,
        expected_version: int,
        errors: Optional[List[ImportErrorEntry]] = None,
        progress: Optional[ProgressEntry] = None
    ) -> ImportJob:
        async with self._lock:
            self._check_version((job.tenant_id, job.id), expected_version)
            key = self._write_job(job, expected_version)
            for entry in errors or []:
                self._errors[key].append(entry.to_dict())
            if progress is not None:
                self._progress[key].append(progress.to_dict())
            return self._load_job(key)

    async def commit_batch(
        self,
        job: ImportJob,
        expected_version: int,
        records: List[ImportRecord],
        errors: List[ImportErrorEntry],
        progress: ProgressEntry
    ) -> ImportJob:
        async with self._lock:
            self._check_version((job.tenant_id, job.id), expected_version)
            key = self._write_job(job, expected_version)
            for record in records:
                self._records[key][record.record_index] = record.to_dict()
            self._errors[key].extend(e.to_dict() for e in errors)
            self._progress[key].append(progress.to_dict())
            return self._load_job(key)

    async def list_errors(
        self,
        tenant_id: str,
        job_id: str,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[ImportErrorEntry], int]:
        async with self._lock:
            key = (tenant_id, job_id)
            if key not in self._jobs:
                raise JobNotFoundError(tenant_id, job_id)
            entries = self._errors[key]
            page = [ImportErrorEntry.from_dict(e) for e in entries[offset:offset + limit]]
            return page, len(entries)

    async def list_records(
        self,
        tenant_id: str,
        job_id: str,
        status: Optional[RecordStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[ImportRecord]:
        async with self._lock:
            key = (tenant_id, job_id)
            if key not in self._jobs:
                raise JobNotFoundError(tenant_id, job_id)
            stored = [self._records[key][i] for i in sorted(self._records[key])]
            if status is not None:
                stored = [r for r in stored if r["status"] == status.value]
            end = None if limit is None else offset + limit
            return [ImportRecord.from_dict(copy.deepcopy(r)) for r in stored[offset:end]]

    async def purge_records(self, tenant_id: str, job_id: str) -> int:
        async with self._lock:
            removed = self._records.pop((tenant_id, job_id), {})
            return len(removed)

    # Signals

    async def get_signal(self, tenant_id: str, job_id: str) -> Optional[JobSignal]:
        return self._signals.get((tenant_id, job_id))

    async def set_signal(self, tenant_id: str, job_id: str, signal: JobSignal) -> None:
        self._signals[(tenant_id, job_id)] = signal

    async def clear_signal(self, tenant_id: str, job_id: str) -> None:
        self._signals.pop((tenant_id, job_id), None)

    # Plans

    async def create_plan(self, plan: MigrationPlan) -> MigrationPlan:
        async with self._lock:
            key = (plan.tenant_id, plan.id)
            if key in self._plans:
                raise ConcurrencyError(plan.id, 0, self._plans[key]["version"])
            plan.version = 1
            self._plans[key] = plan.to_dict()
            return MigrationPlan.from_dict(copy.deepcopy(self._plans[key]))

    async def get_plan(self, tenant_id: str, plan_id: str) -> MigrationPlan:
        async with self._lock:
            key = (tenant_id, plan_id)
            if key not in self._plans:
                raise PlanNotFoundError(tenant_id, plan_id)
            return MigrationPlan.from_dict(copy.deepcopy(self._plans[key]))

    async def list_plans(self, tenant_id: str) -> List[MigrationPlan]:
        async with self._lock:
            return [
                MigrationPlan.from_dict(copy.deepcopy(doc))
                for key, doc in self._plans.items() if key[0] == tenant_id
            ]

    async def save_plan(self, plan: MigrationPlan, expected_version: int) -> MigrationPlan:
        async with self._lock:
            key = (plan.tenant_id, plan.id)
            if key not in self._plans:
                raise PlanNotFoundError(*key)
            actual = self._plans[key]["version"]
            if actual != expected_version:
                raise ConcurrencyError(plan.id, expected_version, actual)
            plan.version = expected_version + 1
            plan.updated_at = utcnow()
            self._plans[key] = plan.to_dict()
            return MigrationPlan.from_dict(copy.deepcopy(self._plans[key]))

    # Templates

    async def create_template(self, template: ImportTemplate) -> ImportTemplate:
        async with self._lock:
            key = (template.tenant_id, template.id)
            if key in self._templates:
                raise ConcurrencyError(template.id, 0, self._templates[key]["version"])
            template.version = 1
            self._templates[key] = template.to_dict()
            return ImportTemplate.from_dict(copy.deepcopy(self._templates[key]))

    async def get_template(self, tenant_id: str, template_id: str) -> ImportTemplate:
        async with self._lock:
            key = (tenant_id, template_id)
            if key not in self._templates:
                raise TemplateNotFoundError(tenant_id, template_id)
            return ImportTemplate.from_dict(copy.deepcopy(self._templates[key]))

    async def list_templates(self, tenant_id: str, active_only: bool = False) -> List[ImportTemplate]:
        async with self._lock:
            return [
                ImportTemplate.from_dict(copy.deepcopy(doc))
                for key, doc in self._templates.items()
                if key[0] == tenant_id and (doc["isActive"] or not active_only)
            ]

    async def save_template(self, template: ImportTemplate, expected_version: int) -> ImportTemplate:
        async with self._lock:
            key = (template.tenant_id, template.id)
            if key not in self._templates:
                raise TemplateNotFoundError(*key)
            actual = self._templates[key]["version"]
            if actual != expected_version:
                raise ConcurrencyError(template.id, expected_version, actual)
            template.version = expected_version + 1
            template.updated_at = utcnow()
            self._templates[key] = template.to_dict()
            return ImportTemplate.from_dict(copy.deepcopy(self._templates[key]))

    async def record_template_use(self, tenant_id: str, template_id: str) -> ImportTemplate:
        async with self._lock:
            key = (tenant_id, template_id)
            if key not in self._templates:
                raise TemplateNotFoundError(tenant_id, template_id)
            doc = self._templates[key]
            doc["usageCount"] += 1
            doc["version"] += 1
            return ImportTemplate.from_dict(copy.deepcopy(doc))


class MemoryRecordWriter(RecordWriter):
    """
    Record writer backed by dictionaries, one namespace per entity type.

    Natural keys match case-insensitively after trimming. Every call is
    appended to ``operations`` as ``(operation, entity_type, entity_id)``.
    """

    def __init__(self):
        self.entities: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.operations: List[Tuple[str, str, Optional[str]]] = []

    async def create(self, entity_type: str, fields: Dict[str, Any]) -> str:
        entity_id = uuid.uuid4().hex
        self.entities[entity_type][entity_id] = copy.deepcopy(fields)
        self.operations.append(("create", entity_type, entity_id))
        return entity_id

    async def find_by_natural_key(self, entity_type: str, key: str, value: Any) -> Optional[str]:
        self.operations.append(("find", entity_type, None))
        wanted = _normalize(value)
        for entity_id, fields in self.entities[entity_type].items():
            if key in fields and fields[key] is not None and _normalize(fields[key]) == wanted:
                return entity_id
        return None

    async def update(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> None:
        if entity_id not in self.entities[entity_type]:
            raise PermanentRepositoryError(f"{entity_type} {entity_id} does not exist")
        self.entities[entity_type][entity_id].update(copy.deepcopy(fields))
        self.operations.append(("update", entity_type, entity_id))

    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        fields = self.entities[entity_type].get(entity_id)
        return copy.deepcopy(fields) if fields is not None else None

    def count(self, entity_type: str) -> int:
        return len(self.entities[entity_type])

    def count_operations(self, operation: str) -> int:
        return sum(1 for op in self.operations if op[0] == operation)
