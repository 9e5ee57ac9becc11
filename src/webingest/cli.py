"""Operator command line for the ingestion queue.

Usage:
    webingest dead-letter:list --tenant-id t_123 --limit 20
    webingest dead-letter:requeue --job-id 6f1c...
    webingest dead-letter:requeue --tenant-id t_123 --limit 50
    webingest drain --batch-size 25 --max-loops 10
    webingest status

Every command prints exactly one JSON line to stdout, tagged with an
"event" field so scripts can pick it out. Human-readable progress goes to
stderr through logging.

Exit codes:
    0 - Command ran (including zero matches and requeued=false)
    1 - Job store unavailable or configuration invalid
    2 - Malformed arguments
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TextIO

from webingest.services.dead_letter import DEFAULT_LIST_LIMIT, DeadLetterFilter
from webingest.services.ingestion_queue import BatchResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from webingest.services import QueueRuntime

logger = logging.getLogger("webingest.cli")

EXIT_OK = 0
EXIT_UNAVAILABLE = 1

DEFAULT_DRAIN_BATCH_SIZE = 25
DEFAULT_DRAIN_MAX_LOOPS = 10


# =============================================================================
# Commands
# =============================================================================


@dataclass(frozen=True)
class ListDeadLettersCommand:
    page: DeadLetterFilter


@dataclass(frozen=True)
class RequeueOneCommand:
    job_id: str


@dataclass(frozen=True)
class RequeueBatchCommand:
    page: DeadLetterFilter


@dataclass(frozen=True)
class DrainCommand:
    batch_size: int = DEFAULT_DRAIN_BATCH_SIZE
    max_loops: int = DEFAULT_DRAIN_MAX_LOOPS


@dataclass(frozen=True)
class StatusCommand:
    tenant_id: str | None = None


Command = (
    ListDeadLettersCommand | RequeueOneCommand | RequeueBatchCommand | DrainCommand | StatusCommand
)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: dict[str, Any]


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        msg = f"expected an integer, got {value!r}"
        raise argparse.ArgumentTypeError(msg) from None
    if parsed < 1:
        msg = f"must be at least 1, got {parsed}"
        raise argparse.ArgumentTypeError(msg)
    return parsed


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        msg = f"expected an integer, got {value!r}"
        raise argparse.ArgumentTypeError(msg) from None
    if parsed < 0:
        msg = f"must be >= 0, got {parsed}"
        raise argparse.ArgumentTypeError(msg)
    return parsed


def _add_page_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--tenant-id",
        default=None,
        help="Restrict to one tenant (default: all tenants)",
    )
    parser.add_argument(
        "--limit",
        type=_positive_int,
        default=DEFAULT_LIST_LIMIT,
        help=f"Page size, capped at 500 (default: {DEFAULT_LIST_LIMIT})",
    )
    parser.add_argument(
        "--offset",
        type=_non_negative_int,
        default=0,
        help="Rows to skip (default: 0)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webingest",
        description="Inspect and operate the website event ingestion queue",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser(
        "dead-letter:list", help="List dead-lettered jobs, newest first"
    )
    _add_page_arguments(list_parser)
    list_parser.add_argument(
        "--include-payload",
        action="store_true",
        help="Include each job's stored event payload",
    )

    requeue_parser = subparsers.add_parser(
        "dead-letter:requeue",
        help="Requeue one dead-lettered job, or one page of them",
    )
    requeue_parser.add_argument("--job-id", default=None, help="Requeue this job only")
    _add_page_arguments(requeue_parser)

    drain_parser = subparsers.add_parser(
        "drain", help="Process due jobs until the queue is empty or max loops is reached"
    )
    drain_parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_DRAIN_BATCH_SIZE,
        help=f"Jobs per batch (default: {DEFAULT_DRAIN_BATCH_SIZE})",
    )
    drain_parser.add_argument(
        "--max-loops",
        type=_positive_int,
        default=DEFAULT_DRAIN_MAX_LOOPS,
        help=f"Maximum batches (default: {DEFAULT_DRAIN_MAX_LOOPS})",
    )

    status_parser = subparsers.add_parser("status", help="Show job counts per status")
    status_parser.add_argument("--tenant-id", default=None, help="Restrict to one tenant")

    return parser


def parse_command(
    argv: Sequence[str] | None = None,
    parser: argparse.ArgumentParser | None = None,
) -> Command:
    """Parse argv into a command.

    Raises:
        SystemExit: With status 2 on malformed arguments.
    """
    parser = parser or build_parser()
    args = parser.parse_args(argv)

    if args.command == "dead-letter:list":
        return ListDeadLettersCommand(
            DeadLetterFilter(
                tenant_id=args.tenant_id,
                limit=args.limit,
                offset=args.offset,
                include_payload=args.include_payload,
            )
        )
    if args.command == "dead-letter:requeue":
        if args.job_id is not None:
            if not args.job_id.strip():
                parser.error("--job-id must not be empty")
            if args.tenant_id is not None:
                parser.error("--job-id cannot be combined with --tenant-id")
            return RequeueOneCommand(job_id=args.job_id.strip())
        return RequeueBatchCommand(
            DeadLetterFilter(tenant_id=args.tenant_id, limit=args.limit, offset=args.offset)
        )
    if args.command == "drain":
        return DrainCommand(batch_size=args.batch_size, max_loops=args.max_loops)
    return StatusCommand(tenant_id=(args.tenant_id or "").strip() or None)


# =============================================================================
# Execution
# =============================================================================


async def execute(command: Command, runtime: QueueRuntime) -> CommandResult:
    """Run a parsed command against the queue services."""
    readiness = await runtime.readiness.check(force=True)
    if not readiness.ready:
        logger.error("Ingestion runtime unavailable: %s", readiness.message)
        return CommandResult(
            EXIT_UNAVAILABLE,
            {"event": "runtime_unavailable", **readiness.to_dict()},
        )

    if isinstance(command, ListDeadLettersCommand):
        return await _list_dead_letters(command, runtime)
    if isinstance(command, RequeueOneCommand):
        return await _requeue_one(command, runtime)
    if isinstance(command, RequeueBatchCommand):
        return await _requeue_batch(command, runtime)
    if isinstance(command, DrainCommand):
        return await _drain(command, runtime)
    return await _status(command, runtime)


def _unavailable(reason: str | None) -> CommandResult:
    return CommandResult(EXIT_UNAVAILABLE, {"event": "runtime_unavailable", "reason": reason})


async def _list_dead_letters(
    command: ListDeadLettersCommand, runtime: QueueRuntime
) -> CommandResult:
    page_filter = command.page
    page = await runtime.dead_letters.list(page_filter)
    if not page.ok:
        return _unavailable(page.reason)

    logger.info("Dead-letter queue listing completed: count=%d", len(page.jobs))
    return CommandResult(
        EXIT_OK,
        {
            "event": "dead_letter_list_result",
            "tenantId": page_filter.tenant_id,
            "limit": page_filter.limit,
            "offset": page_filter.offset,
            "count": len(page.jobs),
            "includePayload": page_filter.include_payload,
            "jobs": [job.to_dict(include_payload=page_filter.include_payload) for job in page.jobs],
        },
    )


async def _requeue_one(command: RequeueOneCommand, runtime: QueueRuntime) -> CommandResult:
    result = await runtime.dead_letters.requeue_one(command.job_id)
    if result.reason is not None:
        return _unavailable(result.reason)

    logger.info("Dead-letter single-job requeue completed: requeued=%s", result.requeued)
    return CommandResult(
        EXIT_OK,
        {"event": "dead_letter_requeue_single_result", **result.to_dict()},
    )


async def _requeue_batch(command: RequeueBatchCommand, runtime: QueueRuntime) -> CommandResult:
    page_filter = command.page
    result = await runtime.dead_letters.requeue_batch(page_filter)
    if result.reason is not None:
        return _unavailable(result.reason)

    logger.info(
        "Dead-letter batch requeue completed: requeued=%d, skipped=%d",
        result.requeued_count,
        result.skipped_count,
    )
    return CommandResult(
        EXIT_OK,
        {
            "event": "dead_letter_requeue_batch_result",
            "tenantId": page_filter.tenant_id,
            "limit": page_filter.limit,
            "offset": page_filter.offset,
            **result.to_dict(),
        },
    )


async def _drain(command: DrainCommand, runtime: QueueRuntime) -> CommandResult:
    totals = BatchResult()
    loops = 0
    while loops < command.max_loops:
        loops += 1
        result = await runtime.queue.process_batch(command.batch_size)
        totals = totals + result
        if result.picked_count == 0:
            break

    logger.info(
        "Ingestion drain completed: loops=%d, picked=%d, processed=%d",
        loops,
        totals.picked_count,
        totals.processed_count,
    )
    return CommandResult(
        EXIT_OK,
        {
            "event": "drain_result",
            "loops": loops,
            "totalPicked": totals.picked_count,
            "totalProcessed": totals.processed_count,
            "totalFailed": totals.failed_count,
            "totalRequeued": totals.requeued_count,
            "totalDeadLettered": totals.dead_lettered_count,
        },
    )


async def _status(command: StatusCommand, runtime: QueueRuntime) -> CommandResult:
    summary = await runtime.queue.queue_summary(command.tenant_id)
    if not summary.ready:
        return _unavailable("store_unavailable")

    oldest = summary.oldest_pending_at
    return CommandResult(
        EXIT_OK,
        {
            "event": "queue_status_result",
            "tenantId": command.tenant_id,
            "statusCounts": summary.status_counts,
            "pendingReadyCount": summary.pending_ready_count,
            "oldestPendingAt": oldest.isoformat() if oldest else None,
        },
    )


def _build_runtime() -> QueueRuntime:
    """Wire the services from settings, with the CRM handlers bound for drain."""
    from webingest.core.settings import get_settings
    from webingest.db import get_session_factory
    from webingest.services import build_runtime
    from webingest.worker.handlers import HandlerRegistry, register_default_handlers

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    session_factory = get_session_factory()
    runtime = build_runtime(settings, session_factory=session_factory)
    register_default_handlers(HandlerRegistry(session_factory)).bind(runtime.queue)
    return runtime


async def _run(command: Command, runtime: QueueRuntime, owns_engine: bool) -> CommandResult:
    try:
        return await execute(command, runtime)
    finally:
        if owns_engine:
            from webingest.db import close_engine

            await close_engine()


def main(
    argv: Sequence[str] | None = None,
    runtime: QueueRuntime | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Console entry point.

    Args:
        argv: Arguments without the program name (default: sys.argv[1:]).
        runtime: Services to use instead of building them from settings.
        stdout: Stream for the JSON result line.

    Returns:
        Process exit code.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    command = parse_command(argv)

    owns_engine = runtime is None
    if runtime is None:
        # Invalid configuration exits with status 1 here
        runtime = _build_runtime()

    result = asyncio.run(_run(command, runtime, owns_engine))

    out = stdout or sys.stdout
    out.write(json.dumps(result.output, default=str) + "\n")
    out.flush()
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
