"""Unit tests for pipeline CLI commands."""

from __future__ import annotations

import argparse
import json
from unittest.mock import AsyncMock, patch

import pytest

from serialdrop.cli.commands.pipeline import (
    pipeline_deliver_cli,
    pipeline_poll_cli,
    pipeline_status_cli,
    register_commands,
)
from serialdrop.config import ProjectConfig
from serialdrop.delivery.channels import build_channels
from serialdrop.errors import Unreachable
from serialdrop.pipeline.runner import assemble_pipeline


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def parser() -> argparse.ArgumentParser:
    """Create a parser with pipeline commands registered."""
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    register_commands(subparsers)
    return parser


@pytest.fixture
def pipeline(session_factory, store, converter, email_transport, push_transport, config, fetcher):
    channels = build_channels(email_transport, push_transport)
    return assemble_pipeline(session_factory, store, converter, channels, config, fetcher=fetcher, worker_id="cli")


@pytest.fixture
def patched(pipeline):
    """Route the handlers to the test pipeline and an empty environment."""
    with patch("serialdrop.pipeline.build_pipeline", AsyncMock(return_value=pipeline)) as build, patch(
        "serialdrop.config.get_config", return_value=ProjectConfig(environ={})
    ):
        yield build


# =============================================================================
# Tests for command registration
# =============================================================================


class TestRegisterCommands:
    """Tests for command registration."""

    def test_poll_command(self, parser):
        args = parser.parse_args(["pipeline", "poll"])
        assert args.command == "pipeline"
        assert args.pipeline_command == "poll"
        assert args.func is pipeline_poll_cli
        assert args.output_json is False
        assert args.log_level == "INFO"
        assert args.init_schema is False

    def test_deliver_options(self, parser):
        args = parser.parse_args(["pipeline", "deliver", "--max-concurrent", "8", "--json"])
        assert args.max_concurrent == 8
        assert args.output_json is True

    def test_serve_options(self, parser):
        args = parser.parse_args(["pipeline", "serve", "--poll-interval", "60", "--delivery-interval", "2.5"])
        assert args.poll_interval == 60.0
        assert args.delivery_interval == 2.5

    def test_status_with_log_level(self, parser):
        args = parser.parse_args(["pipeline", "status", "--log-level", "DEBUG", "--init-schema"])
        assert args.log_level == "DEBUG"
        assert args.init_schema is True

    def test_invalid_log_level_rejected(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["pipeline", "poll", "--log-level", "LOUD"])

    def test_subcommand_required(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["pipeline"])


# =============================================================================
# Tests for handlers
# =============================================================================


class TestPipelinePollCli:
    """Tests for pipeline_poll_cli."""

    def test_prints_summary(self, parser, patched, seed, fetcher, make_candidate, run, capsys):
        fetcher.listing = [make_candidate("https://www.example.com/c/1")]
        run(seed.subscription(run(seed.book("Worm"))))

        exit_code = pipeline_poll_cli(parser.parse_args(["pipeline", "poll"]))

        assert exit_code == 0
        output = capsys.readouterr().out
        assert "1 books due" in output
        assert "New chapters: 1" in output

    def test_failure_exit_code(self, parser, patched, seed, fetcher, run, capsys):
        fetcher.listing = Unreachable("HTTP 500 fetching feed")
        run(seed.subscription(run(seed.book("Worm"))))

        exit_code = pipeline_poll_cli(parser.parse_args(["pipeline", "poll", "--json"]))

        assert exit_code == 1
        data = json.loads(capsys.readouterr().out)
        assert data["outcomes"][0]["error"] == "HTTP 500 fetching feed"

    def test_init_schema_is_forwarded(self, parser, patched, capsys):
        pipeline_poll_cli(parser.parse_args(["pipeline", "poll", "--init-schema"]))

        assert patched.await_args.kwargs["create_schema"] is True


class TestPipelineDeliverCli:
    def test_json_output(self, parser, patched, seed, run, capsys):
        async def setup():
            book = await seed.book()
            await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])

        run(setup())

        exit_code = pipeline_deliver_cli(parser.parse_args(["pipeline", "deliver", "--json"]))

        assert exit_code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["chapters_delivered"] == 1
        assert data["outcomes"][0]["status"] == "delivered"

    def test_max_concurrent_override(self, parser, patched, capsys):
        pipeline_deliver_cli(parser.parse_args(["pipeline", "deliver", "--max-concurrent", "9"]))

        assert patched.await_args.kwargs["config"].max_concurrent_deliveries == 9

    def test_failed_delivery_exit_code(self, parser, patched, seed, converter, run, capsys):
        from serialdrop.errors import ConversionFailure

        converter.fail = ConversionFailure("ebook-convert failed with status 1")

        async def setup():
            book = await seed.book()
            await seed.subscription(book)
            await seed.delivery_method()
            await seed.chapter(book, 1, queue_for=["user-1"])

        run(setup())

        assert pipeline_deliver_cli(parser.parse_args(["pipeline", "deliver"])) == 1
        assert "Failed: 1" in capsys.readouterr().out


class TestPipelineStatusCli:
    def test_prints_counts(self, parser, patched, seed, run, capsys):
        run(seed.book())

        exit_code = pipeline_status_cli(parser.parse_args(["pipeline", "status"]))

        assert exit_code == 0
        assert "Books: 1 (0 backing off)" in capsys.readouterr().out
