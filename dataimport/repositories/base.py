"""Repository interfaces used by the engine."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..models.job import ImportJob, ImportJobStatus, ProgressEntry
from ..models.plan import MigrationPlan
from ..models.record import ImportErrorEntry, ImportRecord, RecordStatus
from ..models.template import ImportTemplate


class JobSignal(str, Enum):
    """Cooperative control requests polled at batch boundaries."""
    PAUSE = "pause"
    CANCEL = "cancel"


class RecordWriter(ABC):
    """
    Writes target entities into the host data store.

    Implementations raise ``TransientRepositoryError`` for failures that
    may succeed on retry and ``PermanentRepositoryError`` for the rest.
    """

    @abstractmethod
    async def create(self, entity_type: str, fields: Dict[str, Any]) -> str:
        """
        Create an entity.

        Returns:
            The new entity id
        """
        pass

    @abstractmethod
    async def find_by_natural_key(self, entity_type: str, key: str, value: Any) -> Optional[str]:
        """
        Look up an existing entity by natural key.

        Returns:
            The entity id, or None when no entity matches
        """
        pass

    @abstractmethod
    async def update(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` into an existing entity."""
        pass

    @abstractmethod
    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Read an entity's fields, or None if it does not exist."""
        pass


class JobStore(ABC):
    """
    Durable storage for import jobs and migration plans.

    Documents are keyed by ``(tenant_id, id)``. Every write is conditional
    on the caller's ``expected_version`` and raises ``ConcurrencyError``
    when another writer got there first. Error and progress logs are
    append-only; error logs are read back in pages only.
    """

    # Jobs

    @abstractmethod
    async def create_job(self, job: ImportJob) -> ImportJob:
        """Insert a new job document and return it at version 1."""
        pass

    @abstractmethod
    async def get_job(self, tenant_id: str, job_id: str) -> ImportJob:
        """
        Read a job with its progress log attached.

        The error log is never attached; use ``list_errors``.

        Raises:
            JobNotFoundError: If the tenant has no such job
        """
        pass

    @abstractmethod
    async def list_jobs(
        self,
        tenant_id: str,
        status: Optional[ImportJobStatus] = None
    ) -> List[ImportJob]:
        pass

    @abstractmethod
    async def save_job(
        self,
        job: ImportJob,
        expected_version: int,
        errors: Optional[List[ImportErrorEntry]] = None,
        progress: Optional[ProgressEntry] = None
    ) -> ImportJob:
        """
        Conditionally replace a job document, appending log entries.

        Returns:
            The job at its new version

        Raises:
            ConcurrencyError: If the stored version differs
        """
        pass

    @abstractmethod
    async def commit_batch(
        self,
        job: ImportJob,
        expected_version: int,
        records: List[ImportRecord],
        errors: List[ImportErrorEntry],
        progress: ProgressEntry
    ) -> ImportJob:
        """
        Atomically store one batch: job counters, record outcomes,
        error entries and a progress entry. Nothing is written if the
        version check fails.

        Raises:
            ConcurrencyError: If the stored version differs
        """
        pass

    @abstractmethod
    async def list_errors(
        self,
        tenant_id: str,
        job_id: str,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[ImportErrorEntry], int]:
        """
        Read one page of a job's error log.

        Returns:
            The page and the total number of entries
        """
        pass

    @abstractmethod
    async def list_records(
        self,
        tenant_id: str,
        job_id: str,
        status: Optional[RecordStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[ImportRecord]:
        pass

    @abstractmethod
    async def purge_records(self, tenant_id: str, job_id: str) -> int:
        """Delete a job's per-record audit trail, returning how many were removed."""
        pass

    # Signals

    @abstractmethod
    async def get_signal(self, tenant_id: str, job_id: str) -> Optional[JobSignal]:
        pass

    @abstractmethod
    async def set_signal(self, tenant_id: str, job_id: str, signal: JobSignal) -> None:
        pass

    @abstractmethod
    async def clear_signal(self, tenant_id: str, job_id: str) -> None:
        pass

    # Plans

    @abstractmethod
    async def create_plan(self, plan: MigrationPlan) -> MigrationPlan:
        pass

    @abstractmethod
    async def get_plan(self, tenant_id: str, plan_id: str) -> MigrationPlan:
        """
        Raises:
            PlanNotFoundError: If the tenant has no such plan
        """
        pass

    @abstractmethod
    async def list_plans(self, tenant_id: str) -> List[MigrationPlan]:
        pass

    @abstractmethod
    async def save_plan(self, plan: MigrationPlan, expected_version: int) -> MigrationPlan:
        """
        Raises:
            ConcurrencyError: If the stored version differs
        """
        pass

    # Templates

    @abstractmethod
    async def create_template(self, template: ImportTemplate) -> ImportTemplate:
        pass

    @abstractmethod
    async def get_template(self, tenant_id: str, template_id: str) -> ImportTemplate:
        """
        Raises:
            TemplateNotFoundError: If the tenant has no such template
        """
        pass

    @abstractmethod
    async def list_templates(self, tenant_id: str, active_only: bool = False) -> List[ImportTemplate]:
        pass

    @abstractmethod
    async def save_template(self, template: ImportTemplate, expected_version: int) -> ImportTemplate:
        """
        Raises:
            ConcurrencyError: If the stored version differs
        """
        pass

    @abstractmethod
    async def record_template_use(self, tenant_id: str, template_id: str) -> ImportTemplate:
        """Atomically increment a template's usage count."""
        pass
