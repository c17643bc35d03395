"""
Command line entry point.

Every command prints one JSON document per line on stdout, so the output
can be piped into jq or another process. Errors go to stderr as JSON with
a non-zero exit code.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog

from ledger_intake.audit import AuditLogger
from ledger_intake.config import Settings, configure_logging, get_settings, validate_all_settings
from ledger_intake.ledger import LedgerInvariantViolation
from ledger_intake.models.action import PendingStatus
from ledger_intake.orchestrator import IngestionFlow, ReviewFlow, create_app_components
from ledger_intake.services.storage import NotFoundError, StorageError
from ledger_intake.validation import ActionValidationError


logger = structlog.get_logger(__name__)

INGEST_COMMANDS = frozenset({"ingest-text", "ingest-statement"})

# Failures reported as a JSON error with exit code 1
COMMAND_ERRORS = (
    ActionValidationError,
    LedgerInvariantViolation,
    NotFoundError,
    StorageError,
    ValueError,
)


def _emit(payload: Any) -> None:
    if hasattr(payload, "model_dump_json"):
        print(payload.model_dump_json())
    else:
        print(json.dumps(payload, default=str, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-intake",
        description="Stage, review and commit financial actions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ingest-text "Lunch 120k at McDo from Bank"
  %(prog)s ingest-statement statement.xlsx --source-name "TCB Nov"
  %(prog)s list --status pending
  %(prog)s approve 3f2c...
  %(prog)s approve-batch tcb_nov_20251130T120000_ab12cd34 --threshold 0.8
  %(prog)s check --skip-llm
        """,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    ingest_text = commands.add_parser("ingest-text", help="Extract and stage one message")
    ingest_text.add_argument("message")

    ingest_statement = commands.add_parser(
        "ingest-statement", help="Stage every row of a bank statement (.xlsx)"
    )
    ingest_statement.add_argument("path")
    ingest_statement.add_argument("--source-name", default=None)

    list_cmd = commands.add_parser("list", help="List staged actions")
    list_cmd.add_argument("--batch-id", default=None)
    list_cmd.add_argument(
        "--status",
        choices=[status.value for status in PendingStatus],
        default=None,
    )
    list_cmd.add_argument("--limit", type=int, default=100)
    list_cmd.add_argument("--offset", type=int, default=0)

    approve = commands.add_parser("approve", help="Approve and commit one action")
    approve.add_argument("pending_id", type=UUID)

    reject = commands.add_parser("reject", help="Reject one action")
    reject.add_argument("pending_id", type=UUID)
    reject.add_argument("--reason", default=None)

    approve_batch = commands.add_parser(
        "approve-batch", help="Approve and commit a batch above a confidence threshold"
    )
    approve_batch.add_argument("batch_id")
    approve_batch.add_argument("--threshold", type=float, default=None)

    check = commands.add_parser("check", help="Load every settings group and report problems")
    check.add_argument("--skip-llm", action="store_true", help="Do not require GEMINI_ settings")

    return parser


def check_settings(skip_llm: bool) -> int:
    results = validate_all_settings()
    _emit(results)
    required = [name for name in results if not name.endswith("_error")]
    if skip_llm:
        required.remove("gemini")
    return 0 if all(results[name] for name in required) else 1


async def run(args: argparse.Namespace) -> int:
    if args.command == "check":
        return check_settings(args.skip_llm)

    settings = get_settings()
    ingestion_flow, review_flow, store = create_app_components(
        settings,
        use_llm=args.command in INGEST_COMMANDS,
    )

    try:
        await dispatch(args, settings, ingestion_flow, review_flow)
    except COMMAND_ERRORS as e:
        await AuditLogger(store).log_error(
            error_type=type(e).__name__,
            error_message=str(e),
            details={"command": args.command},
        )
        raise
    return 0


async def dispatch(
    args: argparse.Namespace,
    settings: Settings,
    ingestion_flow: Optional[IngestionFlow],
    review_flow: ReviewFlow,
) -> None:
    if args.command == "ingest-text":
        _emit(await ingestion_flow.ingest_text(args.message))

    elif args.command == "ingest-statement":
        result = await ingestion_flow.ingest_statement(args.path, source_name=args.source_name)
        _emit({
            "batch_id": result.batch_id,
            "staged": result.staged_count,
            "duplicates": result.duplicate_count,
        })
        for stage_result in result.results:
            _emit(stage_result)

    elif args.command == "list":
        status = PendingStatus(args.status) if args.status else None
        for pending in await review_flow.list(
            batch_id=args.batch_id, status=status, limit=args.limit, offset=args.offset
        ):
            _emit(pending)

    elif args.command == "approve":
        outcome, commit = await review_flow.approve(args.pending_id)
        _emit(outcome)
        if commit is not None:
            _emit(commit)

    elif args.command == "reject":
        _emit(await review_flow.reject(args.pending_id, reason=args.reason))

    elif args.command == "approve-batch":
        threshold = (
            args.threshold
            if args.threshold is not None
            else settings.ledger.batch_approval_threshold
        )
        _emit(await review_flow.approve_batch(args.batch_id, threshold))


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)

    try:
        return asyncio.run(run(args))
    except COMMAND_ERRORS as e:
        logger.error("command_failed", command=args.command, error=str(e))
        print(json.dumps({"error": type(e).__name__, "message": str(e)}), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
