"""Command-line entry point for cron jobs and local runs."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Sequence
from uuid import UUID

from sqlalchemy.engine.url import make_url

from leadsignal.config import settings
from leadsignal.services.errors import PipelineError
from leadsignal.services.orchestrator import InlineDispatcher
from leadsignal.services.pipeline import Pipeline, build_pipeline
from leadsignal.services.repository import build_repository

logger = logging.getLogger("leadsignal.cli")


def _render_database_url(url: str | None) -> str:
    if not url:
        return "<unset>"
    return make_url(url).render_as_string(hide_password=True)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="leadsignal", description="Signal pipeline jobs.")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Override DATABASE_URL (falls back to .env).",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Run a full scan to completion in this process.")
    scan.add_argument(
        "--resume",
        type=str,
        default=None,
        metavar="SCAN_ID",
        help="Continue an existing scan instead of starting a new one.",
    )

    subparsers.add_parser(
        "check-enrichment", help="Poll every processing enrichment task once."
    )

    anniversaries = subparsers.add_parser(
        "registry-anniversaries", help="Import upcoming company anniversaries from the registry."
    )
    anniversaries.add_argument(
        "--exact-day",
        action="store_true",
        help="Search companies founded on the exact target day instead of the whole month.",
    )

    add_query = subparsers.add_parser("add-query", help="Register a content search query.")
    add_query.add_argument("name", help="Display name of the query.")
    add_query.add_argument("query", help="Query string sent to the content API.")
    add_query.add_argument("--inactive", action="store_true", help="Store the query disabled.")
    return parser.parse_args(argv)


def _build(args: argparse.Namespace) -> Pipeline:
    repository = build_repository(args.database_url)
    return build_pipeline(repository=repository, dispatcher=InlineDispatcher())


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _run_scan(pipeline: Pipeline, resume: str | None) -> int:
    if resume:
        scan = pipeline.orchestrator.resume_scan(UUID(resume))
    else:
        scan = pipeline.orchestrator.start_scan()
    final = pipeline.repository.get_scan(scan.id) or scan
    _emit(
        {
            "scan_log_id": str(final.id),
            "status": final.status,
            "items_fetched": final.items_fetched,
            "items_analyzed": final.items_analyzed,
            "signals_created": final.signals_created,
            "batches_run": final.batches_run,
            "invocations": final.invocations,
            "error_message": final.error_message,
        }
    )
    return 0 if final.status == "completed" else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(
        "cli.started",
        extra={
            "command": args.command,
            "database_url": _render_database_url(args.database_url or settings.database_url),
        },
    )
    try:
        pipeline = _build(args)
        if args.command == "scan":
            return _run_scan(pipeline, args.resume)
        if args.command == "check-enrichment":
            _emit(pipeline.reconciler.check_all().as_dict())
            return 0
        if args.command == "registry-anniversaries":
            _emit(pipeline.registry.import_anniversaries(exact_day=args.exact_day).as_dict())
            return 0
        if args.command == "add-query":
            query = pipeline.repository.add_search_query(
                args.name, args.query, is_active=not args.inactive
            )
            _emit({"id": str(query.id), "name": query.name, "is_active": query.is_active})
            return 0
    except PipelineError as exc:
        logger.error("cli.failed", extra={"command": args.command, "code": exc.code})
        _emit({"error": str(exc), "code": exc.code})
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
