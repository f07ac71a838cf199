"""Batch import executor - runs one import job through its state machine."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import (
    CompilationError,
    ConcurrencyError,
    ErrorCode,
    InvalidStateTransition,
    JobAlreadyRunningError,
    PermanentRepositoryError,
    PermissionDeniedError,
    TransientRepositoryError,
    UnsupportedFormatError,
)
from .models.job import ImportJob, ImportJobStatus, ImportStage, ProgressEntry
from .models.record import (
    ErrorSeverity,
    ErrorType,
    ImportErrorEntry,
    ImportRecord,
    RecordStatus,
    utcnow,
)
from .repositories.base import JobSignal, JobStore, RecordWriter
from .services.resolver import CompiledMapping, FieldMappingResolver
from .services.transformer import TransformEngine
from .services.validator import CustomValidator, ValidationEngine, is_empty
from .settings import EngineSettings, get_settings
from .sources.base import Row, RowSource

logger = logging.getLogger(__name__)

CompletionListener = Callable[[ImportJob], Any]


@dataclass
class BatchOutcome:
    """Per-batch local accumulation, merged into the job in one commit."""
    records: List[ImportRecord] = field(default_factory=list)
    errors: List[ImportErrorEntry] = field(default_factory=list)
    counts: Dict[RecordStatus, int] = field(default_factory=lambda: {
        RecordStatus.SUCCESS: 0,
        RecordStatus.FAILED: 0,
        RecordStatus.DUPLICATE: 0,
        RecordStatus.SKIPPED: 0,
    })
    created: int = 0
    updated: int = 0
    fatal_error: Optional[str] = None

    def add(self, record: ImportRecord) -> None:
        self.records.append(record)
        self.counts[record.status] += 1


class BatchImportExecutor:
    """
    Runs import jobs batch by batch.

    Handles:
    - Mapping compilation and row counting (``validating``)
    - Batched mapping, validation, coercion and writes (``processing``)
    - Duplicate detection by natural key
    - Per-record retry of transient write failures
    - Cooperative pause, resume and cancel at batch boundaries
    - One atomic store commit per batch
    """

    def __init__(
        self,
        store: JobStore,
        writer: RecordWriter,
        custom_validators: Optional[Dict[str, CustomValidator]] = None,
        lookup_tables: Optional[Dict[str, Dict[Any, Any]]] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        listeners: Optional[List[CompletionListener]] = None
    ):
        """
        Initialize the executor.

        Args:
            store: Job store
            writer: Target entity writer
            custom_validators: Host predicates available to validation rules
            lookup_tables: Tables available to ``lookup`` transforms
            settings: Engine limits, defaults to environment settings
            sleep: Awaitable used for retry backoff
            listeners: Callbacks invoked with every job that reaches a terminal status
        """
        self.store = store
        self.writer = writer
        self.custom_validators = custom_validators or {}
        self.lookup_tables = lookup_tables or {}
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.listeners: List[CompletionListener] = list(listeners or [])
        self._active: Set[Tuple[str, str]] = set()

    def add_listener(self, listener: CompletionListener) -> None:
        self.listeners.append(listener)

    def is_running(self, tenant_id: str, job_id: str) -> bool:
        return (tenant_id, job_id) in self._active

    def compile(self, job: ImportJob) -> CompiledMapping:
        """
        Compile a job's mapping and rules.

        Raises:
            CompilationError: If the configuration is invalid
        """
        transform_engine = TransformEngine(
            self.lookup_tables,
            default_timezone=job.configuration.timezone,
            default_date_format=job.configuration.date_format,
        )
        validation_engine = ValidationEngine(self.custom_validators)
        resolver = FieldMappingResolver(transform_engine, validation_engine)
        return resolver.compile(job.field_mapping, job.validation_rules)

    # Public control surface

    async def run(self, tenant_id: str, job_id: str, source: RowSource) -> ImportJob:
        """
        Run a pending job to a terminal or paused status.

        A job found in ``processing`` (an interrupted run) continues after
        its last committed record.

        Returns:
            The job as last committed

        Raises:
            JobAlreadyRunningError: If this executor is already running the job
            InvalidStateTransition: If the job cannot be run from its status
            ConcurrencyError: If another writer updated the job mid-run
        """
        async with self._exclusive(tenant_id, job_id):
            job = await self.store.get_job(tenant_id, job_id)

            if job.status == ImportJobStatus.PENDING:
                job = await self._validate(job, source)
                if job.status != ImportJobStatus.PROCESSING:
                    return job
                compiled = self.compile(job)
            elif job.status == ImportJobStatus.PROCESSING:
                logger.info(f"Continuing interrupted job {job_id} at record {job.processed_records}")
                try:
                    compiled = self.compile(job)
                except CompilationError as e:
                    return await self._fail_compilation(job, e)
            else:
                raise InvalidStateTransition(job.status.value, ImportJobStatus.PROCESSING.value)

            return await self._guarded_process(job, compiled, source)

    async def resume(self, tenant_id: str, job_id: str, source: RowSource) -> ImportJob:
        """
        Resume a paused job from its last committed record.

        Raises:
            InvalidStateTransition: If the job is not paused
        """
        async with self._exclusive(tenant_id, job_id):
            job = await self.store.get_job(tenant_id, job_id)
            if job.status != ImportJobStatus.PAUSED:
                raise InvalidStateTransition(job.status.value, ImportJobStatus.PROCESSING.value)

            try:
                compiled = self.compile(job)
            except CompilationError as e:
                return await self._fail_compilation(job, e)

            await self.store.clear_signal(tenant_id, job_id)
            job.transition(ImportJobStatus.PROCESSING)
            job = await self.store.save_job(job, job.version, progress=ProgressEntry(
                stage=ImportStage.IMPORTING,
                progress=job.progress_percentage,
                message=f"Resumed at record {job.processed_records}",
            ))
            logger.info(f"Resumed job {job_id} at record {job.processed_records}")
            return await self._guarded_process(job, compiled, source)

    async def pause(self, tenant_id: str, job_id: str) -> ImportJob:
        """
        Request a pause. Takes effect at the next batch boundary.

        Raises:
            InvalidStateTransition: If the job is not validating or processing
        """
        job = await self.store.get_job(tenant_id, job_id)
        if job.status not in (ImportJobStatus.VALIDATING, ImportJobStatus.PROCESSING):
            raise InvalidStateTransition(job.status.value, ImportJobStatus.PAUSED.value)
        await self.store.set_signal(tenant_id, job_id, JobSignal.PAUSE)
        logger.info(f"Pause requested for job {job_id}")
        return job

    async def cancel(self, tenant_id: str, job_id: str) -> ImportJob:
        """
        Cancel a job.

        Jobs that are not executing are cancelled at once; running jobs stop
        after their in-flight batch. Committed records are kept.

        Raises:
            InvalidStateTransition: If the job is already terminal
        """
        job = await self.store.get_job(tenant_id, job_id)
        if job.status.is_terminal:
            raise InvalidStateTransition(job.status.value, ImportJobStatus.CANCELLED.value)

        idle = job.status == ImportJobStatus.PAUSED or (
            job.status == ImportJobStatus.PENDING and not self.is_running(tenant_id, job_id)
        )
        if idle:
            return await self._finish(job, ImportJobStatus.CANCELLED, "Import cancelled")

        await self.store.set_signal(tenant_id, job_id, JobSignal.CANCEL)
        logger.info(f"Cancel requested for job {job_id}")
        return job

    # Phases

    async def _validate(self, job: ImportJob, source: RowSource) -> ImportJob:
        """Compile the mapping and count rows without writing anything."""
        job.transition(ImportJobStatus.VALIDATING)
        job = await self.store.save_job(job, job.version, progress=ProgressEntry(
            stage=ImportStage.VALIDATING,
            progress=0.0,
            message="Validating field mapping",
        ))
        logger.info(f"=== VALIDATING job {job.id} ===")

        try:
            self.compile(job)
        except CompilationError as e:
            return await self._fail_compilation(job, e)

        try:
            total = await asyncio.to_thread(source.count)
        except UnsupportedFormatError as e:
            return await self._fail(job, ErrorCode.UNSUPPORTED_FORMAT, str(e))
        except (OSError, UnicodeDecodeError) as e:
            return await self._fail(job, ErrorCode.SYSTEM_ERROR, f"Could not read source: {e}")

        if total > self.settings.max_records:
            return await self._fail(
                job,
                ErrorCode.FILE_TOO_LARGE,
                f"Source has {total} records; the limit is {self.settings.max_records}",
            )

        job.total_records = total
        job.started_at = utcnow()
        job.metadata.setdefault("summary", {"created": 0, "updated": 0})
        job.transition(ImportJobStatus.PROCESSING)
        job = await self.store.save_job(job, job.version, progress=ProgressEntry(
            stage=ImportStage.VALIDATING,
            progress=0.0,
            message=f"Validated mapping, {total} records to import",
            details={"totalRecords": total},
        ))
        logger.info(f"Job {job.id}: {total} records to import")
        return job

    async def _guarded_process(
        self,
        job: ImportJob,
        compiled: CompiledMapping,
        source: RowSource
    ) -> ImportJob:
        try:
            return await self._process(job, compiled, source)
        except (ConcurrencyError, InvalidStateTransition):
            raise
        except (UnsupportedFormatError, OSError, UnicodeDecodeError) as e:
            logger.error(f"Job {job.id} source failed: {e}")
            current = await self.store.get_job(job.tenant_id, job.id)
            code = ErrorCode.UNSUPPORTED_FORMAT if isinstance(e, UnsupportedFormatError) else ErrorCode.SYSTEM_ERROR
            return await self._fail(current, code, f"Could not read source: {e}")

    async def _process(
        self,
        job: ImportJob,
        compiled: CompiledMapping,
        source: RowSource
    ) -> ImportJob:
        """Consume the row stream in batches until exhausted, stopped or failed."""
        batch_size = max(1, job.configuration.batch_size or self.settings.default_batch_size)
        seen_keys: Dict[str, str] = {}
        batch_number = 0

        logger.info(f"=== PROCESSING job {job.id} from record {job.processed_records} ===")
        stream = source.stream(batch_size, start=job.processed_records, stop=job.total_records)
        try:
            async for batch in stream:
                signal = await self.store.get_signal(job.tenant_id, job.id)
                if signal is not None:
                    return await self._apply_signal(job, signal)

                batch_number += 1
                outcome = await self._process_batch(job, compiled, batch, seen_keys)
                job = await self._commit(job, outcome, batch_number)

                if outcome.fatal_error:
                    logger.error(f"Job {job.id} aborted in batch {batch_number}: {outcome.fatal_error}")
                    return await self._finish(job, ImportJobStatus.FAILED, outcome.fatal_error)
        finally:
            await stream.aclose()

        logger.info(
            f"Job {job.id} completed: {job.successful_records} succeeded, "
            f"{job.failed_records} failed, {job.duplicate_records} duplicates, "
            f"{job.skipped_records} skipped"
        )
        return await self._finish(job, ImportJobStatus.COMPLETED, "Import completed")

    async def _process_batch(
        self,
        job: ImportJob,
        compiled: CompiledMapping,
        batch: List[Tuple[int, Row]],
        seen_keys: Dict[str, str]
    ) -> BatchOutcome:
        """Map and validate every row, then write valid rows in index order."""
        outcome = BatchOutcome()
        mapped = [(index, row, compiled.process(row)) for index, row in batch]

        for index, row, result in mapped:
            record = ImportRecord(
                job_id=job.id,
                record_index=index,
                raw_fields=row,
                fields=result.fields,
                validation_errors=result.errors,
                warnings=result.warnings,
            )

            if result.errors:
                record.finalize(
                    RecordStatus.FAILED,
                    error_message="; ".join(e.message for e in result.errors),
                )
                outcome.errors.extend(ImportErrorEntry.from_field_error(e, index) for e in result.errors)
                outcome.add(record)
                continue

            try:
                await self._write(job, record, outcome, seen_keys)
            except TransientRepositoryError as e:
                logger.warning(f"Record {index} of job {job.id} failed after {record.retry_count} retries: {e}")
                record.finalize(RecordStatus.FAILED, error_message=e.message)
                outcome.errors.append(ImportErrorEntry(
                    type=ErrorType.NETWORK,
                    code=e.code,
                    message=e.message,
                    row=index,
                    severity=ErrorSeverity.HIGH,
                    context={"retries": record.retry_count},
                ))
            except PermanentRepositoryError as e:
                logger.error(f"Record {index} of job {job.id} failed permanently: {e}")
                record.finalize(RecordStatus.FAILED, error_message=e.message)
                outcome.errors.append(ImportErrorEntry(
                    type=ErrorType.PERMISSION if isinstance(e, PermissionDeniedError) else ErrorType.SYSTEM,
                    code=e.code,
                    message=e.message,
                    row=index,
                    severity=ErrorSeverity.CRITICAL,
                ))
                outcome.add(record)
                outcome.fatal_error = f"Record {index}: {e.message}"
                break
            outcome.add(record)

        return outcome

    async def _write(
        self,
        job: ImportJob,
        record: ImportRecord,
        outcome: BatchOutcome,
        seen_keys: Dict[str, str]
    ) -> None:
        """Create, merge or skip one valid record according to the duplicate policy."""
        config = job.configuration
        entity_type = job.import_type.value
        key_field = job.natural_key
        key_value = record.fields.get(key_field) if key_field else None

        existing_id = None
        normalized = None
        if config.detects_duplicates and not is_empty(key_value):
            normalized = str(key_value).strip().lower()
            existing_id = seen_keys.get(normalized)
            if existing_id is None:
                existing_id = await self._with_retry(
                    job, record,
                    lambda: self.writer.find_by_natural_key(entity_type, key_field, key_value),
                )

        if existing_id is not None:
            if config.update_existing:
                await self._with_retry(
                    job, record, lambda: self.writer.update(entity_type, existing_id, record.fields),
                )
                outcome.updated += 1
                message = f"Merged into existing {entity_type} {existing_id}"
            else:
                message = f"Skipped duplicate of {entity_type} {existing_id}"
            record.finalize(RecordStatus.DUPLICATE, target_entity_id=existing_id, error_message=message)
            outcome.errors.append(ImportErrorEntry(
                type=ErrorType.DUPLICATE,
                code=ErrorCode.DUPLICATE_RECORD,
                message=message,
                row=record.record_index,
                column=key_field,
                value=key_value,
                severity=ErrorSeverity.LOW,
            ))
            return

        if config.update_existing and not config.create_missing:
            record.finalize(RecordStatus.SKIPPED, error_message="No existing record to update")
            return

        entity_id = await self._with_retry(
            job, record, lambda: self.writer.create(entity_type, record.fields),
        )
        outcome.created += 1
        if normalized is not None:
            seen_keys[normalized] = entity_id
        record.finalize(RecordStatus.SUCCESS, target_entity_id=entity_id)

    async def _with_retry(
        self,
        job: ImportJob,
        record: ImportRecord,
        operation: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Retry a write on transient failure with exponential backoff."""
        config = job.configuration
        attempts = config.max_retries + 1 if config.retry_failed_records else 1
        earlier_retries = record.retry_count

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Transient error on record {record.record_index}, "
                f"retry {retry_state.attempt_number}/{config.max_retries} "
                f"in {retry_state.next_action.sleep:.2f}s: {retry_state.outcome.exception()}"
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientRepositoryError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=config.retry_backoff),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        result = None
        async for attempt in retrying:
            with attempt:
                record.retry_count = earlier_retries + attempt.retry_state.attempt_number - 1
                result = await operation()
        return result

    async def _commit(self, job: ImportJob, outcome: BatchOutcome, batch_number: int) -> ImportJob:
        """Merge a batch into the job and store it in one conditional write."""
        job.apply_counts(
            successful=outcome.counts[RecordStatus.SUCCESS],
            failed=outcome.counts[RecordStatus.FAILED],
            duplicate=outcome.counts[RecordStatus.DUPLICATE],
            skipped=outcome.counts[RecordStatus.SKIPPED],
        )
        summary = job.metadata.setdefault("summary", {"created": 0, "updated": 0})
        summary["created"] = summary.get("created", 0) + outcome.created
        summary["updated"] = summary.get("updated", 0) + outcome.updated

        progress = ProgressEntry(
            stage=ImportStage.IMPORTING,
            progress=job.progress_percentage,
            message=f"Processed {job.processed_records}/{job.total_records} records",
            details={
                "batch": batch_number,
                "successful": outcome.counts[RecordStatus.SUCCESS],
                "failed": outcome.counts[RecordStatus.FAILED],
                "duplicate": outcome.counts[RecordStatus.DUPLICATE],
                "skipped": outcome.counts[RecordStatus.SKIPPED],
            },
        )
        job = await self.store.commit_batch(job, job.version, outcome.records, outcome.errors, progress)
        logger.info(f"Job {job.id} batch {batch_number}: {job.processed_records}/{job.total_records} processed")
        return job

    async def _apply_signal(self, job: ImportJob, signal: JobSignal) -> ImportJob:
        if signal == JobSignal.PAUSE:
            job.transition(ImportJobStatus.PAUSED)
            job = await self.store.save_job(job, job.version, progress=ProgressEntry(
                stage=ImportStage.IMPORTING,
                progress=job.progress_percentage,
                message=f"Paused at record {job.processed_records}",
            ))
            await self.store.clear_signal(job.tenant_id, job.id)
            logger.info(f"Job {job.id} paused at record {job.processed_records}")
            return job

        return await self._finish(job, ImportJobStatus.CANCELLED, "Import cancelled")

    # Terminal states

    async def _fail_compilation(self, job: ImportJob, error: CompilationError) -> ImportJob:
        logger.error(f"Job {job.id} mapping is invalid: {error.message}")
        job.metadata["compilationErrors"] = error.problems
        return await self._fail(
            job, ErrorCode.VALIDATION_FAILED, error.message, context={"problems": error.problems},
        )

    async def _fail(
        self,
        job: ImportJob,
        code: ErrorCode,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ImportJob:
        entry = ImportErrorEntry(
            type=ErrorType.VALIDATION if code == ErrorCode.VALIDATION_FAILED else ErrorType.SYSTEM,
            code=code,
            message=message,
            severity=ErrorSeverity.CRITICAL,
            context=context or {},
        )
        return await self._finish(job, ImportJobStatus.FAILED, message, errors=[entry])

    async def _finish(
        self,
        job: ImportJob,
        status: ImportJobStatus,
        message: str,
        errors: Optional[List[ImportErrorEntry]] = None
    ) -> ImportJob:
        job.transition(status)
        job = await self.store.save_job(job, job.version, errors=errors, progress=ProgressEntry(
            stage=ImportStage.FINALIZING,
            progress=job.progress_percentage,
            message=message,
            details={"status": status.value},
        ))
        await self.store.clear_signal(job.tenant_id, job.id)
        logger.info(f"Job {job.id} is {status.value}: {message}")
        await self._notify(job)
        return job

    async def _notify(self, job: ImportJob) -> None:
        for listener in self.listeners:
            try:
                result = listener(job)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Completion listener failed for job {job.id}: {e}")

    def _exclusive(self, tenant_id: str, job_id: str) -> "_ActiveJob":
        return _ActiveJob(self._active, (tenant_id, job_id))


class _ActiveJob:
    """Marks a job as running in this process for the duration of a block."""

    def __init__(self, active: Set[Tuple[str, str]], key: Tuple[str, str]):
        self.active = active
        self.key = key

    async def __aenter__(self) -> None:
        if self.key in self.active:
            raise JobAlreadyRunningError(*self.key)
        self.active.add(self.key)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.active.discard(self.key)
