"""
Compliance Core - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for scheduled compliance jobs.

- Provides argparse-based sub-commands
- Loads configuration from the environment, CLI overrides
- Prints JSON results on stdout
- Entry point for cron / scheduler invocations

============================================================
USAGE
============================================================
python -m compliance_core.cli execute-retention
python -m compliance_core.cli lifecycle-report
python -m compliance_core.cli audit-stats --date-from 2026-01-01
python -m compliance_core.cli run-workflow <workflow-id>
python -m compliance_core.cli export-subject --patient-id <patient-id> --anonymize

============================================================
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import ComplianceConfig, setup_logging
from .exceptions import ComplianceException
from .manager import ComplianceManager, create_compliance_manager
from .models import JobStatus, ReportStatus, ReportType, parse_datetime


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="compliance-core",
        description="Data retention, audit and consent jobs for the clinical record system",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  execute-retention   - Run every active retention policy
  lifecycle-report    - Policies, recent jobs, upcoming retentions
  compliance-check    - GDPR / HIPAA retention posture (exit 1 on issues)
  audit-stats         - Audit event statistics for a date range
  audit-report        - Generate a compliance report
  cleanup-audit       - Delete audit events past their retention date
  run-workflow        - Execute one consent workflow
  run-due-workflows   - Execute every consent workflow that is due

Examples:
  %(prog)s execute-retention
  %(prog)s audit-stats --date-from 2026-01-01 --date-to 2026-02-01
  %(prog)s audit-report --type gdpr_compliance --title "Q1 GDPR"
        """
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    parser.add_argument(
        "--database-url",
        type=str,
        metavar="URL",
        help="SQLAlchemy database URL (default: DATABASE_URL)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: LOG_LEVEL or INFO)",
    )

    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Logging format (default: LOG_FORMAT or text)",
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version="%(prog)s 1.0.0",
    )

    # --------------------------------------------------------
    # Commands
    # --------------------------------------------------------
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    commands.add_parser("execute-retention", help="Run every active retention policy")
    commands.add_parser("lifecycle-report", help="Data lifecycle report")
    commands.add_parser("compliance-check", help="Retention compliance self-check")
    commands.add_parser("cleanup-audit", help="Delete expired audit events")

    stats = commands.add_parser("audit-stats", help="Audit statistics")
    stats.add_argument("--date-from", type=str, metavar="YYYY-MM-DD")
    stats.add_argument("--date-to", type=str, metavar="YYYY-MM-DD")

    report = commands.add_parser("audit-report", help="Generate a compliance report")
    report.add_argument(
        "--type",
        dest="report_type",
        choices=[t.value for t in ReportType],
        default=ReportType.AUDIT_SUMMARY.value,
    )
    report.add_argument("--title", type=str, required=True)
    report.add_argument("--date-from", type=str, metavar="YYYY-MM-DD")
    report.add_argument("--date-to", type=str, metavar="YYYY-MM-DD")
    report.add_argument("--generated-by", type=str)

    workflow = commands.add_parser("run-workflow", help="Execute one consent workflow")
    workflow.add_argument("workflow_id", type=str)

    commands.add_parser("run-due-workflows", help="Execute consent workflows that are due")

    export = commands.add_parser("export-subject", help="Export every row held about one data subject")
    subject = export.add_mutually_exclusive_group(required=True)
    subject.add_argument("--user-id", type=str)
    subject.add_argument("--patient-id", type=str)
    export.add_argument("--anonymize", action="store_true", help="Anonymize the export")
    export.add_argument("--exported-by", type=str)

    commands.add_parser("overdue-requests", help="Data subject requests past their due date")

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """Validate CLI arguments, return list of errors."""
    errors = []

    bounds = {}
    for name in ("date_from", "date_to"):
        value = getattr(args, name, None)
        if value is None:
            continue
        parsed = parse_datetime(value)
        if parsed is None:
            errors.append(f"Invalid date for --{name.replace('_', '-')}: {value}")
        bounds[name] = parsed

    if bounds.get("date_from") and bounds.get("date_to") and bounds["date_from"] > bounds["date_to"]:
        errors.append("--date-from must not be after --date-to")

    return errors


def build_config(args: argparse.Namespace) -> ComplianceConfig:
    """Environment configuration with CLI overrides applied."""
    config = ComplianceConfig.from_env()
    overrides: Dict[str, Any] = {}

    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format

    return dataclasses.replace(config, **overrides)


def _date_arg(value: Optional[str]) -> Optional[datetime]:
    return parse_datetime(value) if value else None


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ============================================================
# COMMANDS
# ============================================================

async def _execute_retention(manager: ComplianceManager, args: argparse.Namespace) -> int:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handles_sigterm = True
    try:
        loop.add_signal_handler(signal.SIGTERM, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        handles_sigterm = False
        logger.debug("Signal handlers unavailable, retention run cannot be cancelled by SIGTERM")

    try:
        results = await manager.retention.execute_retention_policies(cancel_event=cancel_event)
    finally:
        if handles_sigterm:
            loop.remove_signal_handler(signal.SIGTERM)

    _print_json([r.to_dict() for r in results])
    return 0 if all(r.status == JobStatus.COMPLETED for r in results) else 1


async def _lifecycle_report(manager: ComplianceManager, args: argparse.Namespace) -> int:
    report = await manager.retention.get_data_lifecycle_report()
    _print_json(report.to_dict())
    return 0


async def _compliance_check(manager: ComplianceManager, args: argparse.Namespace) -> int:
    policies = await manager.retention.get_retention_policies()
    status = manager.retention.check_compliance(policies)
    _print_json(status.to_dict())
    return 0 if not status.issues else 1


async def _cleanup_audit(manager: ComplianceManager, args: argparse.Namespace) -> int:
    deleted = await manager.audit.cleanup_expired_logs()
    _print_json({"deleted": deleted})
    return 0


async def _audit_stats(manager: ComplianceManager, args: argparse.Namespace) -> int:
    stats = await manager.audit.get_statistics(_date_arg(args.date_from), _date_arg(args.date_to))
    _print_json(stats.to_dict())
    return 0


async def _audit_report(manager: ComplianceManager, args: argparse.Namespace) -> int:
    parameters = {
        key: value for key, value in (("date_from", args.date_from), ("date_to", args.date_to)) if value
    }
    report_id = await manager.audit.generate_compliance_report(
        args.report_type,
        args.title,
        parameters=parameters,
        generated_by=args.generated_by,
    )
    await manager.audit.wait_for_reports()

    report = await manager.audit.get_compliance_report(report_id)
    output = report.to_dict()
    if report.status == ReportStatus.COMPLETED:
        output["payload"] = manager.audit.get_report_payload(report_id)
    _print_json(output)
    return 0 if report.status == ReportStatus.COMPLETED else 1


async def _run_workflow(manager: ComplianceManager, args: argparse.Namespace) -> int:
    execution = await manager.workflows.execute_workflow(args.workflow_id)
    _print_json(execution.to_dict())
    return 0 if execution.status == JobStatus.COMPLETED else 1


async def _run_due_workflows(manager: ComplianceManager, args: argparse.Namespace) -> int:
    executions = await manager.workflows.run_due_workflows()
    _print_json([e.to_dict() for e in executions])
    return 0 if all(e.status == JobStatus.COMPLETED for e in executions) else 1


async def _export_subject(manager: ComplianceManager, args: argparse.Namespace) -> int:
    export = await manager.data_subjects.export_data(
        user_id=args.user_id,
        patient_id=args.patient_id,
        anonymize=args.anonymize,
        exported_by=args.exported_by,
    )
    _print_json(export)
    return 0


async def _overdue_requests(manager: ComplianceManager, args: argparse.Namespace) -> int:
    overdue = await manager.data_subjects.get_overdue_requests()
    _print_json([r.to_dict() for r in overdue])
    return 0 if not overdue else 1


COMMANDS = {
    "execute-retention": _execute_retention,
    "lifecycle-report": _lifecycle_report,
    "compliance-check": _compliance_check,
    "cleanup-audit": _cleanup_audit,
    "audit-stats": _audit_stats,
    "audit-report": _audit_report,
    "run-workflow": _run_workflow,
    "run-due-workflows": _run_due_workflows,
    "export-subject": _export_subject,
    "overdue-requests": _overdue_requests,
}


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace, manager: Optional[ComplianceManager] = None) -> int:
    """
    Async main entry point.

    Args:
        args: Parsed arguments
        manager: Pre-built services (built from configuration when omitted)

    Returns:
        Exit code
    """
    try:
        manager = manager or create_compliance_manager(build_config(args))
    except ComplianceException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    try:
        return await COMMANDS[args.command](manager, args)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ComplianceException as e:
        logger.error(f"{args.command} failed: {e.message}", exc_info=True)
        _print_json({"error": e.to_dict()})
        return 1
    finally:
        await manager.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    config = build_config(args)
    # stdout carries the JSON results
    setup_logging(config.log_level, config.log_format, stream=sys.stderr)

    return asyncio.run(async_main(args))


if __name__ == "__main__":
    sys.exit(main())
