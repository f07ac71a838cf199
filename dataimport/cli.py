"""Command line interface for previews, local imports and mapping checks."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

from .errors import CompilationError, ImportEngineError
from .models.job import ImportJob, ImportJobStatus
from .models.mapping import FieldMapping, ValidationRuleSet
from .models.plan import MigrationPlanStatus
from .repositories.memory import MemoryJobStore, MemoryRecordWriter
from .service import ImportService
from .settings import get_settings
from .sources.files import open_file_source

logger = logging.getLogger(__name__)


def _load_json(file_path: str) -> Any:
    with open(file_path) as f:
        return json.load(f)


def _load_mapping(file_path: str, rules_path: Optional[str] = None) -> Tuple[FieldMapping, ValidationRuleSet]:
    """
    Load a mapping file.

    Accepts either a bare field mapping or a job document carrying
    ``fieldMapping`` and ``validationRules``.
    """
    data = _load_json(file_path)
    if isinstance(data, dict) and "fieldMapping" in data:
        mapping = FieldMapping.from_dict(data["fieldMapping"])
        rules = ValidationRuleSet.from_dict(data.get("validationRules"))
    else:
        mapping = FieldMapping.from_dict(data)
        rules = ValidationRuleSet()
    if rules_path:
        rules = ValidationRuleSet.from_dict(_load_json(rules_path))
    return mapping, rules


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Data Import Tool - Preview and run tenant data imports"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Preview
    preview_parser = subparsers.add_parser("preview", help="Preview a source file")
    preview_parser.add_argument("--input", required=True, help="Path to CSV or JSON source file")
    preview_parser.add_argument("--mapping", help="Path to mapping or job file")
    preview_parser.add_argument("--rules", help="Path to validation rules file")
    preview_parser.add_argument("--sample-size", type=int, default=10, help="Rows to sample")
    preview_parser.add_argument("--natural-key", help="Target field used to flag duplicates")

    # Run import
    run_parser = subparsers.add_parser("run", help="Run an import job against an in-memory target")
    run_parser.add_argument("--input", required=True, help="Path to CSV or JSON source file")
    run_parser.add_argument("--job", required=True, help="Path to job document JSON file")
    run_parser.add_argument("--tenant", default="local", help="Tenant id")
    run_parser.add_argument("--output", help="Write the created entities to this JSON file")
    run_parser.add_argument("--errors", type=int, default=20, help="Error log entries to print")

    # Run plan
    plan_parser = subparsers.add_parser("run-plan", help="Run a migration plan against an in-memory target")
    plan_parser.add_argument("--plan", required=True, help="Path to plan document JSON file")
    plan_parser.add_argument(
        "--source", action="append", default=[], metavar="NAME=PATH",
        help="Named source file, repeatable",
    )
    plan_parser.add_argument("--tenant", default="local", help="Tenant id")

    # Check mapping
    check_parser = subparsers.add_parser("check-mapping", help="Compile a mapping and report problems")
    check_parser.add_argument("--mapping", required=True, help="Path to mapping or job file")
    check_parser.add_argument("--rules", help="Path to validation rules file")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else getattr(logging, get_settings().log_level, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        if args.command == "preview":
            return run_preview(args)
        elif args.command == "run":
            return run_import(args)
        elif args.command == "run-plan":
            return run_plan(args)
        elif args.command == "check-mapping":
            return run_check_mapping(args)
        parser.print_help()
        return 2
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}")
        return 1
    except ImportEngineError as e:
        print(f"Error: {e.message}")
        return 1


def run_preview(args) -> int:
    """Preview a source file, with or without a mapping."""
    source = open_file_source(args.input)
    mapping, rules = _load_mapping(args.mapping, args.rules) if args.mapping else (None, None)

    service = ImportService(store=MemoryJobStore())
    result = service.preview(
        source.sample(args.sample_size),
        mapping,
        rules,
        sample_size=args.sample_size,
        natural_key=args.natural_key,
    )
    print(result.to_json(indent=2))
    return 1 if result.has_errors else 0


def run_import(args) -> int:
    """Run one import job from a job document."""
    writer = MemoryRecordWriter()
    service = ImportService(store=MemoryJobStore(), writer_factory=lambda tenant_id: writer)
    source = open_file_source(args.input)
    document = _load_json(args.job)

    async def execute() -> Tuple[ImportJob, List[Any]]:
        job = await service.create_job(args.tenant, document)
        job = await service.start_job(args.tenant, job.id, source)
        errors, _ = await service.get_errors(args.tenant, job.id, page=1, page_size=args.errors)
        return job, errors

    job, errors = asyncio.run(execute())

    print("\n" + "=" * 60)
    print("IMPORT COMPLETE")
    print("=" * 60)
    print(f"Status: {job.status.value}")
    print(f"Records Processed: {job.processed_records}/{job.total_records}")
    print(f"Succeeded: {job.successful_records}")
    print(f"Failed: {job.failed_records}")
    print(f"Duplicates: {job.duplicate_records}")
    print(f"Skipped: {job.skipped_records}")
    if job.duration_seconds is not None:
        print(f"Duration: {job.duration_seconds:.2f} seconds")

    if errors:
        print(f"\n=== First {len(errors)} Errors ===")
        for entry in errors:
            location = f"row {entry.row}" if entry.row is not None else "job"
            column = f" [{entry.column}]" if entry.column else ""
            print(f"  {location}{column}: {entry.code.value} - {entry.message}")

    if args.output:
        entities = dict(writer.entities.get(job.import_type.value, {}))
        with open(args.output, 'w') as f:
            json.dump(entities, f, indent=2, default=str)
        print(f"\nEntities saved to {args.output}")

    return 0 if job.status == ImportJobStatus.COMPLETED else 1


def run_plan(args) -> int:
    """Run a migration plan with named source files."""
    sources: Dict[str, Any] = {}
    for item in args.source:
        name, sep, path = item.partition("=")
        if not sep or not name or not path:
            print(f"Invalid --source '{item}', expected NAME=PATH")
            return 2
        sources[name] = open_file_source(path)

    service = ImportService(store=MemoryJobStore())
    document = _load_json(args.plan)

    async def execute():
        plan = await service.create_plan(args.tenant, document)
        return await service.run_plan(args.tenant, plan.id, sources)

    plan = asyncio.run(execute())

    print("\n" + "=" * 60)
    print("MIGRATION PLAN COMPLETE")
    print("=" * 60)
    print(f"Status: {plan.status.value}")
    for step in plan.steps:
        suffix = f" - {step.error_message}" if step.error_message else ""
        print(f"  {step.id} ({step.type.value}): {step.status.value}{suffix}")

    return 0 if plan.status == MigrationPlanStatus.COMPLETED else 1


def run_check_mapping(args) -> int:
    """Compile a mapping and print every problem found."""
    mapping, rules = _load_mapping(args.mapping, args.rules)
    service = ImportService(store=MemoryJobStore())
    job = ImportJob(tenant_id="local", field_mapping=mapping, validation_rules=rules)

    print("\n=== Checking Mapping ===")
    try:
        compiled = service.executor_for("local").compile(job)
    except CompilationError as e:
        for problem in e.problems:
            print(f"  - {problem}")
        print(f"\nFound {len(e.problems)} problems")
        return 1

    print(f"\nMapping is valid! ({len(compiled.target_fields)} target fields)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
