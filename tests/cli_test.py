"""Tests for the command-line interface."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import kopf
import pytest
from click.testing import CliRunner
from safir.logging import LogLevel

from kopf_envtest import cli
from kopf_envtest.cli import main
from kopf_envtest.orchestrator import RunInput

from .support import handlers


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> list[RunInput]:
    """Capture the run instead of starting a control plane."""
    runs: list[RunInput] = []

    def run_tests(run_input: RunInput) -> int:
        runs.append(run_input)
        return 4

    def pytest_body(args: Sequence[str] = ()) -> Callable[[], int]:
        return lambda: len(args)

    monkeypatch.setattr(cli, "run_tests", run_tests)
    monkeypatch.setattr(cli, "pytest_body", pytest_body)
    monkeypatch.setattr(handlers, "calls", [])
    return runs


def test_help() -> None:
    runner = CliRunner()

    result = runner.invoke(main, ["-h"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "Commands:" in result.output

    result = runner.invoke(main, ["help"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "Commands:" in result.output

    result = runner.invoke(main, ["help", "run"], catch_exceptions=False)
    assert result.exit_code == 0
    assert "--crd-path" in result.output

    result = runner.invoke(main, ["help", "unknown-command"])
    assert result.exit_code != 0
    assert "Unknown help topic unknown-command" in result.output


def test_run(captured: list[RunInput]) -> None:
    runner = CliRunner()
    result = runner.invoke(
        main,
        [
            "run",
            "--crd-path",
            "config/crd",
            "--crd-path",
            "more/crd.yaml",
            "-m",
            "tests.support.handlers",
            "--log-level",
            "DEBUG",
            "--existing-cluster",
            "--",
            "-k",
            "widgets",
        ],
    )

    assert result.exit_code == 4
    assert len(captured) == 1
    run_input = captured[0]
    assert run_input.crd_paths == [Path("config/crd"), Path("more/crd.yaml")]
    assert run_input.test_body() == 2
    assert run_input.registry is kopf.get_default_registry()
    assert run_input.config
    assert run_input.config.use_existing_cluster
    assert run_input.config.log_level == LogLevel.DEBUG

    assert run_input.setup_indexers is None
    assert run_input.setup_env
    assert run_input.setup_reconcilers
    run_input.setup_env(None)  # type: ignore[arg-type]
    run_input.setup_reconcilers(None, None)  # type: ignore[arg-type]
    assert handlers.calls == ["setup_env", "setup_reconcilers"]


def test_run_defaults(captured: list[RunInput]) -> None:
    runner = CliRunner()
    result = runner.invoke(main, ["run"])

    assert result.exit_code == 4
    run_input = captured[0]
    assert run_input.crd_paths == []
    assert run_input.test_body() == 0
    assert run_input.setup_env is None
    assert run_input.config
    assert not run_input.config.use_existing_cluster


def test_run_bad_module(captured: list[RunInput]) -> None:
    runner = CliRunner()
    result = runner.invoke(main, ["run", "-m", "tests.support.nonexistent"])

    assert result.exit_code == 1
    assert "Cannot import tests.support.nonexistent" in result.output
    assert captured == []
