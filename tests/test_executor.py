"""Tests for the batch import executor."""

import pytest

from dataimport.errors import (
    ConcurrencyError,
    ErrorCode,
    InvalidStateTransition,
    JobAlreadyRunningError,
    PermanentRepositoryError,
    TransientRepositoryError,
)
from dataimport.executor import BatchImportExecutor
from dataimport.models.job import ImportJobStatus
from dataimport.models.mapping import FieldMapping
from dataimport.models.record import ErrorType, RecordStatus
from dataimport.repositories.memory import MemoryRecordWriter
from dataimport.settings import EngineSettings
from dataimport.sources.base import ListRowSource

from .conftest import TENANT, HookWriter


class FlakyWriter(MemoryRecordWriter):
    """Fails the first ``failures`` creates with a transient error."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def create(self, entity_type, fields):
        if self.failures > 0:
            self.failures -= 1
            raise TransientRepositoryError("Connection reset")
        return await super().create(entity_type, fields)


class BrokenWriter(MemoryRecordWriter):
    """Fails permanently on the create with the given call number."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    async def create(self, entity_type, fields):
        self.calls += 1
        if self.calls == self.fail_on:
            raise PermanentRepositoryError("Schema rejected the record")
        return await super().create(entity_type, fields)


class UndercountedSource(ListRowSource):
    """Reports fewer rows than it yields."""

    def __init__(self, rows, counted: int):
        super().__init__(rows)
        self.counted = counted

    def count(self) -> int:
        return self.counted


async def start(executor, job, rows):
    saved = await executor.store.create_job(job)
    return await executor.run(saved.tenant_id, saved.id, ListRowSource(rows))


class TestRun:

    @pytest.mark.asyncio
    async def test_completes_with_consistent_counters(self, executor, writer, job_factory, customer_rows):
        job = await start(executor, job_factory(batch_size=2), customer_rows)

        assert job.status == ImportJobStatus.COMPLETED
        assert job.total_records == 5
        assert job.processed_records == 5
        assert job.successful_records == 5
        assert job.counters_consistent
        assert job.progress_percentage == 100.0
        assert job.metadata["summary"] == {"created": 5, "updated": 0}
        assert writer.count("customers") == 5

    @pytest.mark.asyncio
    async def test_records_are_written_transformed(self, executor, writer, job_factory, customer_rows):
        job = await start(executor, job_factory(), customer_rows)

        records = await executor.store.list_records(TENANT, job.id)
        first = records[0]
        assert first.status == RecordStatus.SUCCESS
        assert first.fields == {"email": "jane@example.com", "name": "Jane Doe"}
        assert writer.entities["customers"][first.target_entity_id]["email"] == "jane@example.com"

    @pytest.mark.asyncio
    async def test_progress_log_has_one_entry_per_batch(self, executor, store, job_factory, customer_rows):
        job = await start(executor, job_factory(batch_size=2), customer_rows)

        batches = [p for p in job.progress_log if "batch" in p.details]
        assert [p.details["batch"] for p in batches] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_invalid_rows_fail_without_stopping_job(self, executor, store, writer, job_factory, customer_rows):
        rows = customer_rows + [{"Email": "not-an-email", "Full Name": "Bad"}, {"Full Name": "Missing"}]

        job = await start(executor, job_factory(), rows)

        assert job.status == ImportJobStatus.COMPLETED
        assert job.successful_records == 5
        assert job.failed_records == 2
        assert writer.count("customers") == 5

        errors, total = await store.list_errors(TENANT, job.id)
        assert total == 2
        assert [(e.row, e.column, e.code) for e in errors] == [
            (5, "email", ErrorCode.INVALID_DATA_TYPE),
            (6, "email", ErrorCode.MISSING_REQUIRED_FIELD),
        ]

    @pytest.mark.asyncio
    async def test_empty_source_completes(self, executor, job_factory):
        job = await start(executor, job_factory(), [])

        assert job.status == ImportJobStatus.COMPLETED
        assert job.total_records == 0
        assert job.progress_percentage == 100.0

    @pytest.mark.asyncio
    async def test_compile_failure_fails_job_before_any_write(self, executor, store, writer, job_factory, customer_rows):
        mapping = FieldMapping.from_dict({"Email": {"targetField": "email", "transform": ["shout"]}})

        job = await start(executor, job_factory(mapping=mapping), customer_rows)

        assert job.status == ImportJobStatus.FAILED
        assert job.metadata["compilationErrors"] == ["Unknown transform 'shout' on field 'email'"]
        assert writer.operations == []
        errors, _ = await store.list_errors(TENANT, job.id)
        assert errors[0].code == ErrorCode.VALIDATION_FAILED

    @pytest.mark.asyncio
    async def test_too_many_records(self, store, writer, job_factory, customer_rows):
        executor = BatchImportExecutor(store, writer, settings=EngineSettings(max_records=3))

        job = await start(executor, job_factory(), customer_rows)

        assert job.status == ImportJobStatus.FAILED
        errors, _ = await store.list_errors(TENANT, job.id)
        assert errors[0].code == ErrorCode.FILE_TOO_LARGE
        assert writer.count("customers") == 0

    @pytest.mark.asyncio
    async def test_continues_interrupted_job(self, executor, store, writer, job_factory, customer_rows):
        job = job_factory(batch_size=2)
        job.status = ImportJobStatus.PROCESSING
        job.total_records = 5
        job.processed_records = 2
        job.successful_records = 2
        saved = await store.create_job(job)

        job = await executor.run(TENANT, saved.id, ListRowSource(customer_rows))

        assert job.status == ImportJobStatus.COMPLETED
        assert job.processed_records == 5
        assert writer.count("customers") == 3

    @pytest.mark.asyncio
    async def test_terminal_job_cannot_run_again(self, executor, job_factory, customer_rows):
        job = await start(executor, job_factory(), customer_rows)

        with pytest.raises(InvalidStateTransition):
            await executor.run(TENANT, job.id, ListRowSource(customer_rows))

    @pytest.mark.asyncio
    async def test_listeners_are_notified(self, store, writer, settings, job_factory, customer_rows):
        finished = []

        async def async_listener(job):
            finished.append(("async", job.status))

        def failing_listener(job):
            raise RuntimeError("listener bug")

        executor = BatchImportExecutor(
            store, writer, settings=settings,
            listeners=[lambda job: finished.append(("sync", job.status)), failing_listener],
        )
        executor.add_listener(async_listener)

        job = await start(executor, job_factory(), customer_rows)

        assert job.status == ImportJobStatus.COMPLETED
        assert finished == [("sync", ImportJobStatus.COMPLETED), ("async", ImportJobStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_same_job_cannot_run_twice_at_once(self, store, settings, job_factory, customer_rows):
        writer = HookWriter()
        executor = BatchImportExecutor(store, writer, settings=settings)
        job = await store.create_job(job_factory())
        raised = []

        async def run_again():
            assert executor.is_running(TENANT, job.id)
            try:
                await executor.run(TENANT, job.id, ListRowSource(customer_rows))
            except JobAlreadyRunningError as e:
                raised.append(e)

        writer.hook = run_again
        job = await executor.run(TENANT, job.id, ListRowSource(customer_rows))

        assert job.status == ImportJobStatus.COMPLETED
        assert len(raised) == 1
        assert not executor.is_running(TENANT, job.id)

    @pytest.mark.asyncio
    async def test_concurrent_update_is_detected(self, store, settings, job_factory, customer_rows):
        writer = HookWriter()
        executor = BatchImportExecutor(store, writer, settings=settings)
        job = await store.create_job(job_factory(batch_size=2))

        async def touch_job():
            current = await store.get_job(TENANT, job.id)
            await store.save_job(current, current.version)

        writer.hook = touch_job
        with pytest.raises(ConcurrencyError):
            await executor.run(TENANT, job.id, ListRowSource(customer_rows))

        stored = await store.get_job(TENANT, job.id)
        assert stored.processed_records == 0

    @pytest.mark.asyncio
    async def test_transforms_and_missing_required_field(self, executor, writer, job_factory):
        mapping = FieldMapping.from_dict({
            "Email": {"targetField": "email", "required": True, "dataType": "email"},
            "Full Name": {"targetField": "name", "transform": ["trim", "capitalize"]},
        })
        rows = [
            {"Email": "jane@example.com", "Full Name": " jane doe "},
            {"Email": ""},
        ]

        job = await start(executor, job_factory(mapping=mapping), rows)

        assert job.status == ImportJobStatus.COMPLETED
        assert job.successful_records == 1
        assert job.failed_records == 1
        records = await executor.store.list_records(TENANT, job.id)
        assert records[0].fields == {"email": "jane@example.com", "name": "Jane doe"}
        assert records[1].status == RecordStatus.FAILED
        errors, total = await executor.store.list_errors(TENANT, job.id)
        assert total == 1
        assert errors[0].code == ErrorCode.MISSING_REQUIRED_FIELD
        assert errors[0].column == "email"
        assert errors[0].row == 1
        assert writer.count("customers") == 1

    @pytest.mark.asyncio
    async def test_rows_past_the_counted_total_are_not_imported(self, executor, writer, job_factory, customer_rows):
        saved = await executor.store.create_job(job_factory(batch_size=2))

        job = await executor.run(TENANT, saved.id, UndercountedSource(customer_rows, counted=2))

        assert job.status == ImportJobStatus.COMPLETED
        assert job.total_records == 2
        assert job.processed_records == 2
        assert job.processed_records <= job.total_records
        assert job.counters_consistent
        assert job.progress_percentage == 100.0
        assert writer.count("customers") == 2


class TestDuplicates:

    @pytest.mark.asyncio
    async def test_duplicate_in_file_is_skipped(self, executor, store, writer, job_factory, customer_rows):
        rows = customer_rows + [{"Email": "Jane@example.com ", "Full Name": "Jane Again"}]

        job = await start(executor, job_factory(), rows)

        assert job.successful_records == 5
        assert job.duplicate_records == 1
        assert writer.count_operations("create") == 5

        errors, _ = await store.list_errors(TENANT, job.id)
        assert errors[0].code == ErrorCode.DUPLICATE_RECORD
        assert errors[0].type == ErrorType.DUPLICATE
        assert errors[0].row == 5

    @pytest.mark.asyncio
    async def test_existing_entity_is_skipped(self, executor, writer, job_factory, customer_rows):
        existing_id = await writer.create("customers", {"email": "jane@example.com", "name": "Old"})

        job = await start(executor, job_factory(), customer_rows)

        assert job.duplicate_records == 1
        assert writer.entities["customers"][existing_id]["name"] == "Old"
        records = await executor.store.list_records(TENANT, job.id, status=RecordStatus.DUPLICATE)
        assert records[0].target_entity_id == existing_id

    @pytest.mark.asyncio
    async def test_update_existing_merges(self, executor, writer, job_factory, customer_rows):
        existing_id = await writer.create("customers", {"email": "jane@example.com", "name": "Old", "tier": "gold"})

        job = await start(executor, job_factory(update_existing=True), customer_rows)

        assert job.duplicate_records == 1
        assert job.successful_records == 4
        assert job.metadata["summary"] == {"created": 4, "updated": 1}
        assert writer.entities["customers"][existing_id] == {
            "email": "jane@example.com", "name": "Jane Doe", "tier": "gold",
        }

    @pytest.mark.asyncio
    async def test_update_only_skips_unmatched_rows(self, executor, writer, job_factory, customer_rows):
        await writer.create("customers", {"email": "jane@example.com"})

        job = await start(executor, job_factory(update_existing=True, create_missing=False), customer_rows)

        assert job.duplicate_records == 1
        assert job.skipped_records == 4
        assert job.counters_consistent
        assert writer.count("customers") == 1

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self, executor, writer, job_factory, customer_rows):
        rows = customer_rows + [customer_rows[0]]

        job = await start(executor, job_factory(skip_duplicates=False), rows)

        assert job.successful_records == 6
        assert writer.count_operations("find") == 0

    @pytest.mark.asyncio
    async def test_configured_natural_key(self, executor, writer, job_factory, customer_rows):
        rows = customer_rows + [{"Email": "other@example.com", "Full Name": "Jane Doe"}]

        job = await start(executor, job_factory(natural_key="name"), rows)

        assert job.duplicate_records == 1


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_with_backoff(self, store, settings, sleeper, job_factory, customer_rows):
        writer = FlakyWriter(failures=2)
        executor = BatchImportExecutor(store, writer, settings=settings, sleep=sleeper)

        job = await start(executor, job_factory(), customer_rows[:1])

        assert job.successful_records == 1
        assert sleeper.delays == [0.5, 1.0]
        records = await store.list_records(TENANT, job.id)
        assert records[0].retry_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_record(self, store, settings, sleeper, job_factory, customer_rows):
        writer = FlakyWriter(failures=10)
        executor = BatchImportExecutor(store, writer, settings=settings, sleep=sleeper)

        job = await start(executor, job_factory(max_retries=2), customer_rows[:1])

        assert job.status == ImportJobStatus.COMPLETED
        assert job.failed_records == 1
        assert sleeper.delays == [0.5, 1.0]
        errors, _ = await store.list_errors(TENANT, job.id)
        assert errors[0].type == ErrorType.NETWORK
        assert errors[0].code == ErrorCode.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_retries_can_be_disabled(self, store, settings, sleeper, job_factory, customer_rows):
        writer = FlakyWriter(failures=1)
        executor = BatchImportExecutor(store, writer, settings=settings, sleep=sleeper)

        job = await start(executor, job_factory(retry_failed_records=False), customer_rows[:2])

        assert job.failed_records == 1
        assert job.successful_records == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_permanent_failure_stops_the_job(self, store, settings, job_factory, customer_rows):
        writer = BrokenWriter(fail_on=3)
        executor = BatchImportExecutor(store, writer, settings=settings)

        job = await start(executor, job_factory(batch_size=2), customer_rows)

        assert job.status == ImportJobStatus.FAILED
        assert job.successful_records == 2
        assert job.failed_records == 1
        assert job.processed_records == 3
        assert job.counters_consistent
        errors, _ = await store.list_errors(TENANT, job.id)
        assert errors[0].row == 2
        assert errors[0].code == ErrorCode.SYSTEM_ERROR


class TestControl:

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, executor, store, job_factory):
        job = await store.create_job(job_factory())

        job = await executor.cancel(TENANT, job.id)

        assert job.status == ImportJobStatus.CANCELLED
        with pytest.raises(InvalidStateTransition):
            await executor.cancel(TENANT, job.id)

    @pytest.mark.asyncio
    async def test_cancel_stops_at_batch_boundary(self, store, settings, job_factory, customer_rows):
        writer = HookWriter()
        executor = BatchImportExecutor(store, writer, settings=settings)
        job = await store.create_job(job_factory(batch_size=2))

        async def cancel():
            await executor.cancel(TENANT, job.id)

        writer.hook = cancel
        job = await executor.run(TENANT, job.id, ListRowSource(customer_rows))

        assert job.status == ImportJobStatus.CANCELLED
        assert job.processed_records == 2
        assert writer.count("customers") == 2
        assert await store.get_signal(TENANT, job.id) is None

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, store, settings, job_factory, customer_rows):
        writer = HookWriter()
        executor = BatchImportExecutor(store, writer, settings=settings)
        job = await store.create_job(job_factory(batch_size=2))

        async def pause():
            await executor.pause(TENANT, job.id)

        writer.hook = pause
        job = await executor.run(TENANT, job.id, ListRowSource(customer_rows))

        assert job.status == ImportJobStatus.PAUSED
        assert job.processed_records == 2

        job = await executor.resume(TENANT, job.id, ListRowSource(customer_rows))

        assert job.status == ImportJobStatus.COMPLETED
        assert job.processed_records == 5
        assert writer.count("customers") == 5
        assert writer.count_operations("create") == 5

    @pytest.mark.asyncio
    async def test_cancel_paused_job(self, store, settings, job_factory, customer_rows):
        writer = HookWriter()
        executor = BatchImportExecutor(store, writer, settings=settings)
        job = await store.create_job(job_factory(batch_size=2))

        async def pause():
            await executor.pause(TENANT, job.id)

        writer.hook = pause
        await executor.run(TENANT, job.id, ListRowSource(customer_rows))
        job = await executor.cancel(TENANT, job.id)

        assert job.status == ImportJobStatus.CANCELLED
        assert job.processed_records == 2

    @pytest.mark.asyncio
    async def test_pause_requires_running_job(self, executor, store, job_factory):
        job = await store.create_job(job_factory())

        with pytest.raises(InvalidStateTransition):
            await executor.pause(TENANT, job.id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused_job(self, executor, store, job_factory, customer_rows):
        job = await store.create_job(job_factory())

        with pytest.raises(InvalidStateTransition):
            await executor.resume(TENANT, job.id, ListRowSource(customer_rows))
