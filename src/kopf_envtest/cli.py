"""Command-line interface for running a test suite under the harness."""

from __future__ import annotations

import importlib
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from types import ModuleType
from typing import Any

import click
import kopf
from safir.click import display_help
from safir.logging import LogLevel

from .config import Config
from .orchestrator import RunInput, pytest_body
from .orchestrator import run as run_tests

__all__ = [
    "help",
    "main",
    "run",
]


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(message="%(version)s")
def main() -> None:
    """Run Kopf operator integration tests against a test control plane."""


@main.command()
@click.argument("topic", default=None, required=False, nargs=1)
@click.pass_context
def help(ctx: click.Context, topic: str | None) -> None:
    """Show help for any command."""
    display_help(main, ctx, topic)


@main.command(context_settings={"ignore_unknown_options": True})
@click.option(
    "--crd-path",
    "crd_paths",
    multiple=True,
    type=click.Path(path_type=Path),
    help="CRD file or directory to install, may be repeated.",
)
@click.option(
    "-m",
    "--module",
    "modules",
    multiple=True,
    help="Module with Kopf handlers and setup functions, may be repeated.",
)
@click.option(
    "--log-level",
    type=click.Choice([level.value for level in LogLevel]),
    default=None,
    help="Logging level of the harness and the manager.",
)
@click.option(
    "--existing-cluster",
    is_flag=True,
    default=False,
    help="Use the cluster in the current kubeconfig.",
)
@click.argument("pytest_args", nargs=-1, type=click.UNPROCESSED)
def run(
    *,
    crd_paths: tuple[Path, ...],
    modules: tuple[str, ...],
    log_level: str | None,
    existing_cluster: bool,
    pytest_args: tuple[str, ...],
) -> None:
    """Run pytest once the manager is ready.

    Handlers declared with the usual Kopf decorators in the modules given
    with ``--module`` are run by the manager, as with ``kopf run``. A module
    may also define ``setup_env(env)``, ``setup_indexers(ctx, manager)``, and
    ``setup_reconcilers(ctx, manager)``, which are called before the manager
    starts. Arguments after ``--`` are passed to pytest.
    """
    overrides: dict[str, Any] = {}
    if log_level:
        overrides["log_level"] = log_level
    if existing_cluster:
        overrides["use_existing_cluster"] = True
    config = Config(**overrides)
    loaded = [_import_module(m) for m in modules]
    run_input = RunInput(
        test_body=pytest_body(pytest_args),
        crd_paths=list(crd_paths),
        setup_env=_chain(loaded, "setup_env"),
        setup_indexers=_chain(loaded, "setup_indexers"),
        setup_reconcilers=_chain(loaded, "setup_reconcilers"),
        config=config,
        registry=kopf.get_default_registry(),
    )
    sys.exit(run_tests(run_input))


def _import_module(name: str) -> ModuleType:
    try:
        return importlib.import_module(name)
    except ImportError as e:
        raise click.ClickException(f"Cannot import {name}: {e!s}") from e


def _chain(
    modules: Sequence[ModuleType], name: str
) -> Callable[..., None] | None:
    """Combine the setup functions of that name from several modules."""
    functions = [getattr(m, name) for m in modules if hasattr(m, name)]
    if not functions:
        return None

    def chained(*args: Any) -> None:
        for function in functions:
            function(*args)

    return chained
