"""Migration plan executor - dependency-ordered orchestration of steps."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from .errors import (
    ErrorCode,
    ImportEngineError,
    InvalidStateTransition,
    PlanValidationError,
)
from .executor import BatchImportExecutor
from .models.job import ImportJob, ImportJobStatus, ImportStage, ProgressEntry
from .models.plan import (
    MigrationPlan,
    MigrationPlanStatus,
    MigrationStep,
    MigrationStepStatus,
    MigrationStepType,
)
from .models.record import ErrorSeverity, ErrorType, ImportErrorEntry, RecordStatus, utcnow
from .repositories.base import JobSignal
from .sources.base import RowSource

logger = logging.getLogger(__name__)

FINISHED_STEP_STATUSES = (
    MigrationStepStatus.COMPLETED,
    MigrationStepStatus.FAILED,
    MigrationStepStatus.SKIPPED,
)
PERSISTED_RECORD_STATUSES = (RecordStatus.SUCCESS, RecordStatus.DUPLICATE)

JobRunner = Callable[[str, str, RowSource], Awaitable[ImportJob]]


class StepFailed(ImportEngineError):
    """A step finished its work but did not meet its success criteria."""


def _describe(error: BaseException) -> str:
    return error.message if isinstance(error, ImportEngineError) else str(error)


def validate_plan(plan: MigrationPlan) -> List[str]:
    """
    Check a plan's dependency graph.

    Returns:
        Step ids in a valid execution order

    Raises:
        PlanValidationError: On duplicate ids, unknown dependencies or cycles
    """
    problems = []
    ids = [step.id for step in plan.steps]
    known = set(ids)

    for step_id in sorted(known):
        if not step_id:
            problems.append("Step with an empty id")
        elif ids.count(step_id) > 1:
            problems.append(f"Duplicate step id '{step_id}'")

    for step in plan.steps:
        for dependency in step.dependencies:
            if dependency == step.id:
                problems.append(f"Step '{step.id}' depends on itself")
            elif dependency not in known:
                problems.append(f"Step '{step.id}' depends on unknown step '{dependency}'")

    if problems:
        raise PlanValidationError("; ".join(problems))

    # Kahn's algorithm, ties broken by declared order
    position = {step.id: (step.order, index) for index, step in enumerate(plan.steps)}
    remaining = {step.id: set(step.dependencies) for step in plan.steps}
    ordered: List[str] = []
    while remaining:
        ready = sorted((sid for sid, deps in remaining.items() if not deps), key=position.get)
        if not ready:
            cycle = ", ".join(sorted(remaining))
            raise PlanValidationError(f"Dependency cycle among steps: {cycle}")
        for step_id in ready:
            ordered.append(step_id)
            del remaining[step_id]
        for deps in remaining.values():
            deps.difference_update(ready)
    return ordered


class MigrationPlanExecutor:
    """
    Runs migration plans.

    Handles:
    - Dependency validation and topological scheduling
    - Concurrent execution of independent steps
    - Skipping the transitive dependents of failed steps
    - Import, verify, reference fixup and cleanup steps
    - Id remapping between import steps and fixup steps
    - Cooperative cancellation
    """

    def __init__(
        self,
        executor: BatchImportExecutor,
        poll_interval: float = 0.5,
        retry_backoff: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        job_runner: Optional[JobRunner] = None
    ):
        """
        Initialize the plan executor.

        Args:
            executor: Batch executor used by import steps; its store and
                writer serve every step
            poll_interval: Seconds between cancellation checks while steps run
            retry_backoff: Base delay before retrying a failed step
            sleep: Awaitable used for retry backoff
            job_runner: Runs an import step's job as (tenant_id, job_id,
                source); defaults to the batch executor. Pass the service's
                start_job so plan imports share its concurrency limit
        """
        self.executor = executor
        self.store = executor.store
        self.writer = executor.writer
        self.poll_interval = poll_interval
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self._run_job = job_runner or executor.run
        self._save_lock = asyncio.Lock()
        self._handlers = {
            MigrationStepType.IMPORT_BATCH: self._run_import_step,
            MigrationStepType.VERIFY: self._run_verify_step,
            MigrationStepType.FIXUP_REFERENCES: self._run_fixup_step,
            MigrationStepType.CLEANUP: self._run_cleanup_step,
        }

    async def run(
        self,
        tenant_id: str,
        plan_id: str,
        sources: Optional[Dict[str, RowSource]] = None
    ) -> MigrationPlan:
        """
        Run a pending plan to completion.

        Args:
            tenant_id: Owning tenant
            plan_id: Plan to run
            sources: Row sources by name, referenced by import steps

        Returns:
            The plan in its terminal status

        Raises:
            InvalidStateTransition: If the plan is not pending
            PlanValidationError: If the dependency graph is invalid
        """
        sources = sources or {}
        plan = await self.store.get_plan(tenant_id, plan_id)
        if plan.status != MigrationPlanStatus.PENDING:
            raise InvalidStateTransition(plan.status.value, MigrationPlanStatus.RUNNING.value)
        try:
            validate_plan(plan)
        except PlanValidationError as e:
            plan.error_log.append(ImportErrorEntry(
                type=ErrorType.VALIDATION,
                code=e.code,
                message=e.message,
                severity=ErrorSeverity.CRITICAL,
            ))
            plan.transition(MigrationPlanStatus.FAILED)
            await self._save(plan)
            raise

        plan.transition(MigrationPlanStatus.RUNNING)
        self._log_progress(plan, f"Started plan with {len(plan.steps)} steps")
        await self._save(plan)
        logger.info(f"=== RUNNING PLAN {plan.id} ({len(plan.steps)} steps) ===")

        cancelled = await self._schedule(plan, sources)

        if cancelled:
            final = MigrationPlanStatus.CANCELLED
        elif any(s.status == MigrationStepStatus.FAILED and not s.skippable for s in plan.steps):
            final = MigrationPlanStatus.FAILED
        else:
            final = MigrationPlanStatus.COMPLETED

        plan.metadata["stepCounts"] = plan.step_counts()
        plan.transition(final)
        self._log_progress(plan, f"Plan {final.value}")
        await self._save(plan)
        await self.store.clear_signal(tenant_id, plan_id)
        logger.info(f"Plan {plan.id} is {final.value}: {plan.step_counts()}")
        return plan

    async def cancel(self, tenant_id: str, plan_id: str) -> MigrationPlan:
        """
        Cancel a plan. Running steps finish their in-flight batch first.

        Raises:
            InvalidStateTransition: If the plan is already terminal
        """
        plan = await self.store.get_plan(tenant_id, plan_id)
        if plan.status.is_terminal:
            raise InvalidStateTransition(plan.status.value, MigrationPlanStatus.CANCELLED.value)
        if plan.status == MigrationPlanStatus.PENDING:
            for step in plan.steps:
                step.status = MigrationStepStatus.SKIPPED
            plan.transition(MigrationPlanStatus.CANCELLED)
            return await self.store.save_plan(plan, plan.version)

        await self.store.set_signal(tenant_id, plan_id, JobSignal.CANCEL)
        logger.info(f"Cancel requested for plan {plan_id}")
        return plan

    # Scheduling

    async def _schedule(self, plan: MigrationPlan, sources: Dict[str, RowSource]) -> bool:
        """
        Run steps as their dependencies complete.

        Returns:
            True if the plan was cancelled
        """
        order = {sid: i for i, sid in enumerate(validate_plan(plan))}
        pending = {s.id for s in plan.steps if s.status == MigrationStepStatus.PENDING}
        running: Dict[asyncio.Task, str] = {}
        limit = plan.configuration.concurrency
        cancelled = False

        while pending or running:
            if not cancelled and await self.store.get_signal(plan.tenant_id, plan.id) == JobSignal.CANCEL:
                cancelled = True
                logger.info(f"Cancelling plan {plan.id}")
                for step_id in running.values():
                    await self._cancel_step_job(plan, plan.get_step(step_id))
                for step_id in sorted(pending, key=order.get):
                    plan.get_step(step_id).status = MigrationStepStatus.SKIPPED
                pending.clear()
                await self._save(plan)

            if not cancelled:
                await self._skip_blocked(plan, pending, order)
                ready = sorted(
                    (sid for sid in pending if self._dependencies_met(plan, plan.get_step(sid))),
                    key=order.get,
                )
                for step_id in ready:
                    if len(running) >= limit:
                        break
                    pending.discard(step_id)
                    step = plan.get_step(step_id)
                    step.status = MigrationStepStatus.RUNNING
                    step.started_at = utcnow()
                    await self._save(plan)
                    task = asyncio.create_task(self._execute_step(plan, step, sources))
                    running[task] = step_id

            if not running:
                break

            done, _ = await asyncio.wait(
                running.keys(), timeout=self.poll_interval, return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                running.pop(task)
                task.result()

        return cancelled

    def _dependencies_met(self, plan: MigrationPlan, step: MigrationStep) -> bool:
        return all(
            plan.get_step(dep).status == MigrationStepStatus.COMPLETED
            for dep in step.dependencies
        )

    async def _skip_blocked(self, plan: MigrationPlan, pending: set, order: Dict[str, int]) -> None:
        """Mark pending steps behind a failed or skipped dependency as skipped."""
        changed = True
        skipped_any = False
        while changed:
            changed = False
            for step_id in sorted(pending, key=order.get):
                step = plan.get_step(step_id)
                blocked = [
                    dep for dep in step.dependencies
                    if plan.get_step(dep).status in (MigrationStepStatus.FAILED, MigrationStepStatus.SKIPPED)
                ]
                if blocked:
                    step.status = MigrationStepStatus.SKIPPED
                    step.error_message = f"Skipped because {', '.join(blocked)} did not complete"
                    pending.discard(step_id)
                    logger.info(f"Step {step_id} skipped: dependency {blocked[0]} did not complete")
                    changed = skipped_any = True
        if skipped_any:
            await self._save(plan)

    async def _execute_step(
        self,
        plan: MigrationPlan,
        step: MigrationStep,
        sources: Dict[str, RowSource]
    ) -> None:
        """Run one step, retrying non-import steps when configured."""
        handler = self._handlers[step.type]
        retries = 0
        if plan.configuration.retry_failed_steps and step.type != MigrationStepType.IMPORT_BATCH:
            retries = plan.configuration.max_retries

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Step {step.id} failed, retrying in {retry_state.next_action.sleep:.2f}s: "
                f"{_describe(retry_state.outcome.exception())}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    step.attempts += 1
                    logger.info(f"Running step {step.id} ({step.type.value}), attempt {step.attempts}")
                    await handler(plan, step, sources)
            step.status = MigrationStepStatus.COMPLETED
            step.error_message = None
        except Exception as e:
            message = _describe(e)
            logger.error(f"Step {step.id} failed: {message}")
            step.status = MigrationStepStatus.FAILED
            step.error_message = message
            plan.error_log.append(ImportErrorEntry(
                type=ErrorType.SYSTEM,
                code=e.code if isinstance(e, ImportEngineError) else ErrorCode.SYSTEM_ERROR,
                message=f"Step {step.id}: {message}",
                severity=ErrorSeverity.MEDIUM if step.skippable else ErrorSeverity.CRITICAL,
                context={"stepId": step.id, "stepType": step.type.value},
            ))

        step.completed_at = utcnow()
        self._log_progress(plan, f"Step {step.id} {step.status.value}")
        await self._save(plan)

    async def _cancel_step_job(self, plan: MigrationPlan, step: MigrationStep) -> None:
        job_id = step.metadata.get("jobId")
        if step.type != MigrationStepType.IMPORT_BATCH or not job_id:
            return
        try:
            await self.executor.cancel(plan.tenant_id, job_id)
        except InvalidStateTransition:
            pass

    # Step handlers

    async def _run_import_step(
        self,
        plan: MigrationPlan,
        step: MigrationStep,
        sources: Dict[str, RowSource]
    ) -> None:
        """Create (or reuse) an import job and run it on the step's source."""
        config = step.configuration
        source_name = config.get("source", step.id)
        if source_name not in sources:
            raise StepFailed(f"No row source named '{source_name}'")

        job_id = step.metadata.get("jobId") or config.get("jobId")
        if not job_id:
            spec = dict(config.get("job") or {})
            spec["tenantId"] = plan.tenant_id
            spec.pop("id", None)
            spec.setdefault("name", step.name or step.id)
            spec.setdefault("metadata", {})["planId"] = plan.id
            job = await self.store.create_job(ImportJob.from_dict(spec))
            job_id = job.id
        step.metadata["jobId"] = job_id
        await self._save(plan)

        job = await self._run_job(plan.tenant_id, job_id, sources[source_name])
        step.metadata.update({
            "processedRecords": job.processed_records,
            "successfulRecords": job.successful_records,
            "failedRecords": job.failed_records,
            "duplicateRecords": job.duplicate_records,
            "skippedRecords": job.skipped_records,
        })

        if job.status != ImportJobStatus.COMPLETED:
            raise StepFailed(f"Import job {job_id} ended {job.status.value}")

        max_failed = config.get("maxFailedRecords")
        if max_failed is not None and job.failed_records > int(max_failed):
            raise StepFailed(
                f"Import job {job_id} failed {job.failed_records} records (allowed {max_failed})"
            )

        id_field = config.get("idField")
        if id_field:
            table_name = config.get("remap", job.import_type.value)
            table = plan.id_remap.setdefault(table_name, {})
            added = 0
            for status in PERSISTED_RECORD_STATUSES:
                for record in await self.store.list_records(plan.tenant_id, job_id, status=status):
                    old_id = record.raw_fields.get(id_field)
                    if old_id in (None, "") or not record.target_entity_id:
                        continue
                    table[str(old_id)] = record.target_entity_id
                    added += 1
            step.metadata["remapped"] = added
            logger.info(f"Step {step.id} added {added} ids to remap table '{table_name}'")

    async def _run_verify_step(
        self,
        plan: MigrationPlan,
        step: MigrationStep,
        sources: Dict[str, RowSource]
    ) -> None:
        """Re-validate persisted entities of an earlier import without writing."""
        config = step.configuration
        job = await self._referenced_job(plan, step)
        compiled = self.executor.compile(job)
        entity_type = config.get("entityType", job.import_type.value)

        checked = invalid = missing = 0
        for status in PERSISTED_RECORD_STATUSES:
            for record in await self.store.list_records(plan.tenant_id, job.id, status=status):
                if not record.target_entity_id:
                    continue
                checked += 1
                entity = await self.writer.get(entity_type, record.target_entity_id)
                if entity is None:
                    missing += 1
                    plan.error_log.append(ImportErrorEntry(
                        type=ErrorType.REFERENCE,
                        code=ErrorCode.REFERENCE_NOT_FOUND,
                        message=f"{entity_type} {record.target_entity_id} no longer exists",
                        row=record.record_index,
                        context={"stepId": step.id, "jobId": job.id},
                    ))
                    continue
                problems = [e for e in compiled.validate(entity) if e.blocking]
                if problems:
                    invalid += 1
                    for problem in problems:
                        entry = ImportErrorEntry.from_field_error(problem, record.record_index)
                        entry.context = {"stepId": step.id, "jobId": job.id}
                        plan.error_log.append(entry)

        step.metadata.update({"checked": checked, "invalid": invalid, "missing": missing})
        allowed = int(config.get("maxFailures", 0))
        if invalid + missing > allowed:
            raise StepFailed(f"Verification found {invalid} invalid and {missing} missing records")

    async def _run_fixup_step(
        self,
        plan: MigrationPlan,
        step: MigrationStep,
        sources: Dict[str, RowSource]
    ) -> None:
        """Rewrite foreign keys of imported entities through the id-remap tables."""
        config = step.configuration
        job = await self._referenced_job(plan, step)
        entity_type = config.get("entityType", job.import_type.value)
        references = config.get("references") or []
        if not references:
            raise StepFailed("Fixup step declares no references")

        updated = unresolved = 0
        for status in PERSISTED_RECORD_STATUSES:
            for record in await self.store.list_records(plan.tenant_id, job.id, status=status):
                if not record.target_entity_id:
                    continue
                changes: Dict[str, Any] = {}
                for reference in references:
                    field_name = reference["field"]
                    old_id = record.fields.get(field_name)
                    if old_id in (None, ""):
                        continue
                    table = plan.id_remap.get(reference.get("remap", field_name), {})
                    new_id = table.get(str(old_id))
                    if new_id is None:
                        required = reference.get("required", True)
                        if required:
                            unresolved += 1
                        plan.error_log.append(ImportErrorEntry(
                            type=ErrorType.REFERENCE,
                            code=ErrorCode.REFERENCE_NOT_FOUND,
                            message=f"No new id for {field_name}={old_id}",
                            row=record.record_index,
                            column=field_name,
                            value=old_id,
                            severity=ErrorSeverity.HIGH if required else ErrorSeverity.LOW,
                            context={"stepId": step.id, "jobId": job.id},
                        ))
                        continue
                    if new_id != old_id:
                        changes[field_name] = new_id
                if changes:
                    await self.writer.update(entity_type, record.target_entity_id, changes)
                    updated += 1

        step.metadata.update({"updated": updated, "unresolved": unresolved})
        allowed = int(config.get("maxUnresolved", 0))
        if unresolved > allowed:
            raise StepFailed(f"{unresolved} references could not be resolved")

    async def _run_cleanup_step(
        self,
        plan: MigrationPlan,
        step: MigrationStep,
        sources: Dict[str, RowSource]
    ) -> None:
        """Purge per-record audit trails and remap tables that are no longer needed."""
        config = step.configuration
        job_ids = list(config.get("jobIds", []))
        for step_id in config.get("steps", []):
            referenced = plan.get_step(step_id)
            if referenced is None or not referenced.metadata.get("jobId"):
                raise StepFailed(f"Step '{step_id}' has no import job to clean up")
            job_ids.append(referenced.metadata["jobId"])

        purged = 0
        if config.get("purgeRecords", True):
            for job_id in job_ids:
                purged += await self.store.purge_records(plan.tenant_id, job_id)

        dropped = []
        for table_name in config.get("remapTables", []):
            if plan.id_remap.pop(table_name, None) is not None:
                dropped.append(table_name)

        step.metadata.update({"purgedRecords": purged, "droppedRemapTables": dropped})
        logger.info(f"Step {step.id} purged {purged} records and {len(dropped)} remap tables")

    async def _referenced_job(self, plan: MigrationPlan, step: MigrationStep) -> ImportJob:
        config = step.configuration
        job_id = config.get("jobId")
        if not job_id and config.get("step"):
            referenced = plan.get_step(config["step"])
            job_id = referenced.metadata.get("jobId") if referenced else None
        if not job_id:
            raise StepFailed(f"Step {step.id} does not reference an import job")
        return await self.store.get_job(plan.tenant_id, job_id)

    # Persistence

    def _log_progress(self, plan: MigrationPlan, message: str) -> None:
        plan.progress_log.append(ProgressEntry(
            stage=ImportStage.IMPORTING,
            progress=plan.progress_percentage,
            message=message,
            details=plan.step_counts(),
        ))

    async def _save(self, plan: MigrationPlan) -> None:
        """Store the shared in-memory plan, serialized across step tasks."""
        async with self._save_lock:
            saved = await self.store.save_plan(plan, plan.version)
            plan.version = saved.version
