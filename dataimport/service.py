"""Import service - tenant-facing facade over the executors and the store."""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import CompilationError, ErrorCode, ImportEngineError
from .executor import BatchImportExecutor, CompletionListener
from .models.job import ImportJob, ImportJobStatus
from .models.mapping import FieldMapping, ValidationRuleSet
from .models.plan import MigrationPlan
from .models.preview import PreviewResult
from .models.record import ImportErrorEntry, ImportRecord, RecordStatus
from .models.template import ImportTemplate
from .planner import MigrationPlanExecutor, validate_plan
from .repositories.base import JobStore, RecordWriter
from .repositories.memory import MemoryJobStore, MemoryRecordWriter
from .services.preview import DEFAULT_SAMPLE_SIZE, PreviewGenerator
from .services.resolver import FieldMappingResolver
from .services.transformer import TransformEngine
from .services.validator import CustomValidator, ValidationEngine
from .settings import EngineSettings, get_settings
from .sources.base import RowSource

logger = logging.getLogger(__name__)

WriterFactory = Callable[[str], RecordWriter]


class ImportService:
    """
    Entry point for hosts embedding the import engine.

    Supports:
    - Job creation with up-front configuration checks
    - Previews of raw rows or of a job's source
    - Starting, pausing, resuming and cancelling jobs
    - Paginated error logs and record audit trails
    - Import templates that seed new jobs
    - Migration plan creation, execution and cancellation
    - A process-wide cap on concurrently running jobs
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        writer_factory: Optional[WriterFactory] = None,
        custom_validators: Optional[Dict[str, CustomValidator]] = None,
        lookup_tables: Optional[Dict[str, Dict[Any, Any]]] = None,
        settings: Optional[EngineSettings] = None,
        listeners: Optional[List[CompletionListener]] = None
    ):
        """
        Initialize the service.

        Args:
            store: Job store, in-memory by default
            writer_factory: Builds the record writer for a tenant; one
                in-memory writer per tenant by default
            custom_validators: Host predicates available to validation rules
            lookup_tables: Tables available to ``lookup`` transforms
            settings: Engine limits, defaults to environment settings
            listeners: Callbacks invoked with every job that reaches a terminal status
        """
        self.store = store or MemoryJobStore()
        self.settings = settings or get_settings()
        self.custom_validators = custom_validators or {}
        self.lookup_tables = lookup_tables or {}
        self.listeners = list(listeners or [])
        self._writer_factory = writer_factory or (lambda tenant_id: MemoryRecordWriter())
        self._executors: Dict[str, BatchImportExecutor] = {}
        self._semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_jobs))
        self._tasks: Set[asyncio.Task] = set()

    def executor_for(self, tenant_id: str) -> BatchImportExecutor:
        """Get the tenant's executor, creating it and its writer on first use."""
        if tenant_id not in self._executors:
            self._executors[tenant_id] = BatchImportExecutor(
                self.store,
                self._writer_factory(tenant_id),
                custom_validators=self.custom_validators,
                lookup_tables=self.lookup_tables,
                settings=self.settings,
                listeners=self.listeners,
            )
        return self._executors[tenant_id]

    def writer_for(self, tenant_id: str) -> RecordWriter:
        return self.executor_for(tenant_id).writer

    # Jobs

    async def create_job(self, tenant_id: str, data: Dict[str, Any]) -> ImportJob:
        """
        Create a pending job from a job document.

        Args:
            tenant_id: Owning tenant
            data: Job document (camelCase keys as persisted). A
                ``templateId`` fills in whatever the document leaves out

        Returns:
            The stored job

        Raises:
            ImportEngineError: If the import type or configuration is invalid,
                or the declared record count exceeds the engine limit
            TemplateNotFoundError: If the named template does not exist
            CompilationError: If the mapping or validation rules are invalid
        """
        document = dict(data)
        template_id = document.pop("templateId", None)
        if template_id:
            template = await self.store.get_template(tenant_id, template_id)
            if not template.is_active:
                raise ImportEngineError(
                    f"Import template {template_id} is inactive", ErrorCode.VALIDATION_FAILED,
                )
            document = template.job_document(document)
        document.pop("id", None)
        document["tenantId"] = tenant_id
        for key in ("status", "processedRecords", "successfulRecords", "failedRecords",
                    "duplicateRecords", "skippedRecords", "version"):
            document.pop(key, None)

        configuration = dict(document.get("configuration") or {})
        if "batchSize" not in configuration and "batch_size" not in configuration:
            configuration["batchSize"] = self.settings.default_batch_size
        document["configuration"] = configuration

        try:
            job = ImportJob.from_dict(document)
        except (ValueError, TypeError) as e:
            raise ImportEngineError(f"Invalid import job: {e}", ErrorCode.VALIDATION_FAILED) from e

        if job.configuration.batch_size < 1:
            raise ImportEngineError("batchSize must be at least 1", ErrorCode.VALIDATION_FAILED)
        if job.configuration.max_retries < 0:
            raise ImportEngineError("maxRetries cannot be negative", ErrorCode.VALIDATION_FAILED)
        if job.total_records is not None and job.total_records > self.settings.max_records:
            raise ImportEngineError(
                f"Import of {job.total_records} records exceeds the limit of {self.settings.max_records}",
                ErrorCode.FILE_TOO_LARGE,
            )

        # Reject bad mappings before anything is stored
        self.executor_for(tenant_id).compile(job)

        job = await self.store.create_job(job)
        if template_id:
            await self.store.record_template_use(tenant_id, template_id)
        logger.info(f"Created import job {job.id} ({job.import_type.value}) for tenant {tenant_id}")
        return job

    async def get_job(self, tenant_id: str, job_id: str) -> ImportJob:
        return await self.store.get_job(tenant_id, job_id)

    async def list_jobs(
        self,
        tenant_id: str,
        status: Optional[ImportJobStatus] = None
    ) -> List[ImportJob]:
        return await self.store.list_jobs(tenant_id, status)

    async def start_job(self, tenant_id: str, job_id: str, source: RowSource) -> ImportJob:
        """Run a job, waiting for a free slot when the concurrency cap is reached."""
        async with self._semaphore:
            return await self.executor_for(tenant_id).run(tenant_id, job_id, source)

    async def resume_job(self, tenant_id: str, job_id: str, source: RowSource) -> ImportJob:
        async with self._semaphore:
            return await self.executor_for(tenant_id).resume(tenant_id, job_id, source)

    def submit_job(self, tenant_id: str, job_id: str, source: RowSource, resume: bool = False) -> asyncio.Task:
        """
        Start or resume a job in the background.

        Returns:
            The task running the job
        """
        runner = self.resume_job if resume else self.start_job
        task = asyncio.create_task(self._run_in_background(runner, tenant_id, job_id, source))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_in_background(self, runner, tenant_id: str, job_id: str, source: RowSource) -> Optional[ImportJob]:
        try:
            return await runner(tenant_id, job_id, source)
        except ImportEngineError as e:
            logger.error(f"Background run of job {job_id} stopped: {e.message}")
            return None

    async def pause_job(self, tenant_id: str, job_id: str) -> ImportJob:
        return await self.executor_for(tenant_id).pause(tenant_id, job_id)

    async def cancel_job(self, tenant_id: str, job_id: str) -> ImportJob:
        return await self.executor_for(tenant_id).cancel(tenant_id, job_id)

    async def get_errors(
        self,
        tenant_id: str,
        job_id: str,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> Tuple[List[ImportErrorEntry], int]:
        """
        Get one page of a job's error log.

        Returns:
            (entries, total number of entries)
        """
        size = page_size or self.settings.error_page_size
        offset = (max(page, 1) - 1) * size
        return await self.store.list_errors(tenant_id, job_id, offset=offset, limit=size)

    async def get_records(
        self,
        tenant_id: str,
        job_id: str,
        status: Optional[RecordStatus] = None,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> List[ImportRecord]:
        size = page_size or self.settings.error_page_size
        offset = (max(page, 1) - 1) * size
        return await self.store.list_records(tenant_id, job_id, status=status, offset=offset, limit=size)

    # Templates

    async def create_template(self, tenant_id: str, data: Dict[str, Any]) -> ImportTemplate:
        """
        Save a reusable import template.

        Raises:
            ImportEngineError: If the import type or configuration is invalid
            CompilationError: If the mapping or validation rules are invalid
        """
        document = dict(data)
        document.pop("id", None)
        document["tenantId"] = tenant_id
        for key in ("usageCount", "isSystem", "version"):
            document.pop(key, None)
        try:
            template = ImportTemplate.from_dict(document)
        except (ValueError, TypeError) as e:
            raise ImportEngineError(f"Invalid import template: {e}", ErrorCode.VALIDATION_FAILED) from e

        self.executor_for(tenant_id).compile(ImportJob.from_dict(template.job_document()))

        template = await self.store.create_template(template)
        logger.info(f"Created import template {template.id} ({template.name}) for tenant {tenant_id}")
        return template

    async def get_template(self, tenant_id: str, template_id: str) -> ImportTemplate:
        return await self.store.get_template(tenant_id, template_id)

    async def list_templates(self, tenant_id: str, active_only: bool = False) -> List[ImportTemplate]:
        return await self.store.list_templates(tenant_id, active_only)

    async def set_template_active(self, tenant_id: str, template_id: str, active: bool) -> ImportTemplate:
        """Enable or retire a template. Retired templates cannot seed new jobs."""
        template = await self.store.get_template(tenant_id, template_id)
        template.is_active = active
        return await self.store.save_template(template, template.version)

    # Previews

    def preview(
        self,
        rows: Iterable[Dict[str, Any]],
        mapping: Optional[FieldMapping] = None,
        rule_set: Optional[ValidationRuleSet] = None,
        sample_size: Optional[int] = None,
        natural_key: Optional[str] = None,
        timezone: Optional[str] = None,
        date_format: Optional[str] = None
    ) -> PreviewResult:
        """Preview raw rows. Never writes anything."""
        resolver = FieldMappingResolver(
            TransformEngine(self.lookup_tables, default_timezone=timezone, default_date_format=date_format),
            ValidationEngine(self.custom_validators),
        )
        generator = PreviewGenerator(resolver)
        return generator.generate(rows, mapping, rule_set, sample_size=sample_size, natural_key=natural_key)

    async def preview_job(
        self,
        tenant_id: str,
        job_id: str,
        source: RowSource,
        sample_size: Optional[int] = None
    ) -> PreviewResult:
        """Preview a job's source with the job's own mapping and rules."""
        job = await self.store.get_job(tenant_id, job_id)
        size = sample_size if sample_size is not None else DEFAULT_SAMPLE_SIZE
        rows = await asyncio.to_thread(source.sample, size)
        return self.preview(
            rows,
            job.field_mapping,
            job.validation_rules,
            sample_size=size,
            natural_key=job.natural_key,
            timezone=job.configuration.timezone,
            date_format=job.configuration.date_format,
        )

    # Plans

    def planner_for(self, tenant_id: str) -> MigrationPlanExecutor:
        return MigrationPlanExecutor(self.executor_for(tenant_id), job_runner=self.start_job)

    async def create_plan(self, tenant_id: str, data: Dict[str, Any]) -> MigrationPlan:
        """
        Create a pending migration plan.

        Raises:
            PlanValidationError: If the dependency graph is invalid
            ImportEngineError: If a step is malformed
        """
        document = dict(data)
        document.pop("id", None)
        document["tenantId"] = tenant_id
        for key in ("status", "errorLog", "progressLog", "idRemap", "version"):
            document.pop(key, None)
        try:
            plan = MigrationPlan.from_dict(document)
        except (ValueError, TypeError, KeyError) as e:
            raise ImportEngineError(f"Invalid migration plan: {e}", ErrorCode.VALIDATION_FAILED) from e

        validate_plan(plan)
        executor = self.executor_for(tenant_id)
        for step in plan.steps:
            job_spec = step.configuration.get("job")
            if job_spec:
                try:
                    executor.compile(ImportJob.from_dict(dict(job_spec, tenantId=tenant_id)))
                except CompilationError as e:
                    raise CompilationError([f"Step '{step.id}': {p}" for p in e.problems]) from e
                except (ValueError, TypeError) as e:
                    raise ImportEngineError(
                        f"Step '{step.id}' has an invalid job: {e}", ErrorCode.VALIDATION_FAILED,
                    ) from e

        plan = await self.store.create_plan(plan)
        logger.info(f"Created migration plan {plan.id} with {len(plan.steps)} steps for tenant {tenant_id}")
        return plan

    async def get_plan(self, tenant_id: str, plan_id: str) -> MigrationPlan:
        return await self.store.get_plan(tenant_id, plan_id)

    async def list_plans(self, tenant_id: str) -> List[MigrationPlan]:
        return await self.store.list_plans(tenant_id)

    async def run_plan(
        self,
        tenant_id: str,
        plan_id: str,
        sources: Optional[Dict[str, RowSource]] = None
    ) -> MigrationPlan:
        return await self.planner_for(tenant_id).run(tenant_id, plan_id, sources)

    def submit_plan(
        self,
        tenant_id: str,
        plan_id: str,
        sources: Optional[Dict[str, RowSource]] = None
    ) -> asyncio.Task:
        """Run a plan in the background."""
        task = asyncio.create_task(self._run_plan_in_background(tenant_id, plan_id, sources))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_plan_in_background(
        self,
        tenant_id: str,
        plan_id: str,
        sources: Optional[Dict[str, RowSource]]
    ) -> Optional[MigrationPlan]:
        try:
            return await self.run_plan(tenant_id, plan_id, sources)
        except ImportEngineError as e:
            logger.error(f"Background run of plan {plan_id} stopped: {e.message}")
            return None

    async def cancel_plan(self, tenant_id: str, plan_id: str) -> MigrationPlan:
        return await self.planner_for(tenant_id).cancel(tenant_id, plan_id)
