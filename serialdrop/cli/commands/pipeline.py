"""CLI commands for the ingestion and delivery pipeline.

Commands:
- pipeline poll: Poll every due book once and ingest new chapters
- pipeline deliver: Process every subscription with queued chapters once
- pipeline serve: Run polling and delivery continuously
- pipeline status: Show counts of books, chapters and queued deliveries
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add pipeline subcommands to the main CLI parser."""

    # pipeline command group
    pipeline_parser = subparsers.add_parser(
        "pipeline",
        description="Poll serial sources and deliver new chapters.",
        help="Run the ingestion and delivery pipeline.",
    )
    pipeline_subparsers = pipeline_parser.add_subparsers(
        dest="pipeline_command",
        metavar="SUBCOMMAND",
    )
    pipeline_subparsers.required = True

    # Shared arguments for all pipeline subcommands
    def add_common_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--json",
            action="store_true",
            dest="output_json",
            help="Output results in JSON format.",
        )
        parser.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging verbosity (default: INFO).",
        )
        parser.add_argument(
            "--init-schema",
            action="store_true",
            help="Create missing tables before running (development only).",
        )

    # pipeline poll
    poll_parser = pipeline_subparsers.add_parser(
        "poll",
        description="Poll every due book once and ingest new chapters.",
        help="Run one poll cycle.",
    )
    add_common_args(poll_parser)
    poll_parser.set_defaults(func=pipeline_poll_cli, pipeline_command="poll")

    # pipeline deliver
    deliver_parser = pipeline_subparsers.add_parser(
        "deliver",
        description="Group, convert and deliver queued chapters once.",
        help="Run one delivery cycle.",
    )
    add_common_args(deliver_parser)
    deliver_parser.add_argument(
        "--max-concurrent",
        type=int,
        help="Subscriptions processed at once (default: from configuration).",
    )
    deliver_parser.set_defaults(func=pipeline_deliver_cli, pipeline_command="deliver")

    # pipeline serve
    serve_parser = pipeline_subparsers.add_parser(
        "serve",
        description="Run polling and delivery continuously until interrupted.",
        help="Run the pipeline as a service.",
    )
    add_common_args(serve_parser)
    serve_parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between poll cycles (default: from configuration).",
    )
    serve_parser.add_argument(
        "--delivery-interval",
        type=float,
        help="Seconds between delivery cycles (default: from configuration).",
    )
    serve_parser.set_defaults(func=pipeline_serve_cli, pipeline_command="serve")

    # pipeline status
    status_parser = pipeline_subparsers.add_parser(
        "status",
        description="Show counts of books, chapters, subscriptions and queued deliveries.",
        help="Display pipeline status.",
    )
    add_common_args(status_parser)
    status_parser.set_defaults(func=pipeline_status_cli, pipeline_command="status")


def _configure_logging(args: argparse.Namespace) -> None:
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)


def _pipeline_config(args: argparse.Namespace):
    from dataclasses import replace
    from datetime import timedelta

    from serialdrop.config import get_config
    from serialdrop.pipeline import PipelineConfig

    config = PipelineConfig.from_project_config(get_config())
    overrides = {}
    if getattr(args, "max_concurrent", None):
        overrides["max_concurrent_deliveries"] = args.max_concurrent
    if getattr(args, "poll_interval", None):
        overrides["poll_interval"] = timedelta(seconds=args.poll_interval)
    if getattr(args, "delivery_interval", None):
        overrides["delivery_interval"] = timedelta(seconds=args.delivery_interval)
    return replace(config, **overrides) if overrides else config


def _print_result(args: argparse.Namespace, result) -> None:
    if args.output_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(result.summary())


def pipeline_poll_cli(args: argparse.Namespace) -> int:
    """Poll every due book once.

    Returns 1 when any book failed to poll.
    """
    from serialdrop.pipeline import build_pipeline, run_poll_cycle

    _configure_logging(args)

    async def run():
        async with await build_pipeline(config=_pipeline_config(args), create_schema=args.init_schema) as pipeline:
            return await run_poll_cycle(pipeline)

    result = asyncio.run(run())
    _print_result(args, result)
    return 0 if not result.failures else 1


def pipeline_deliver_cli(args: argparse.Namespace) -> int:
    """Process every subscription with queued chapters once.

    Returns 1 when any delivery failed.
    """
    from serialdrop.pipeline import build_pipeline, run_delivery_cycle

    _configure_logging(args)

    async def run():
        async with await build_pipeline(config=_pipeline_config(args), create_schema=args.init_schema) as pipeline:
            return await run_delivery_cycle(pipeline)

    result = asyncio.run(run())
    _print_result(args, result)
    return 0 if not result.count("failed") else 1


def pipeline_serve_cli(args: argparse.Namespace) -> int:
    """Run the poll and delivery loops until SIGINT or SIGTERM."""
    from serialdrop.pipeline import build_pipeline, serve

    _configure_logging(args)

    async def run() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop.set)
            except NotImplementedError:  # pragma: no cover - Windows event loops
                pass
        async with await build_pipeline(config=_pipeline_config(args), create_schema=args.init_schema) as pipeline:
            await serve(pipeline, stop)

    asyncio.run(run())
    return 0


def pipeline_status_cli(args: argparse.Namespace) -> int:
    """Display counts from the relational store."""
    from serialdrop.pipeline import build_pipeline, collect_status

    _configure_logging(args)

    async def run():
        async with await build_pipeline(config=_pipeline_config(args), create_schema=args.init_schema) as pipeline:
            return await collect_status(pipeline)

    report = asyncio.run(run())
    _print_result(args, report)
    return 0
