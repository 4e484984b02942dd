"""Lifecycle orchestration of a test run.

The orchestrator starts a control plane fixture, binds a Kopf manager to it,
lets the caller register handlers, waits until the manager is ready, runs the
test body, and then shuts everything down in a fixed order. Failures of the
harness itself are never reported to the test body. They are logged and the
process is terminated, so that a broken harness cannot produce a misleading
successful test run.
"""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, wait
from dataclasses import dataclass, replace
from functools import partial
from pathlib import Path
from typing import Any, NoReturn

import kopf
import pytest
import structlog
from structlog.stdlib import BoundLogger

from .config import Config
from .constants import (
    FATAL_EXIT_CODE,
    INTERRUPTED_EXIT_CODE,
    LOGGER_NAME,
    READINESS_POLL_INTERVAL,
)
from .context import Context
from .environment import Environment, set_environment
from .exceptions import (
    CRDLoadError,
    FixtureStopError,
    ManagerBuildError,
    ManagerRuntimeError,
)
from .fixture import Connection, Fixture, build_fixture
from .manager import ReadinessSignal, ReconciliationManager
from .scheme import Scheme

__all__ = [
    "FixtureFactory",
    "ManagerFactory",
    "Orchestrator",
    "RunInput",
    "pytest_body",
    "run",
    "terminate_process",
]

FixtureFactory = Callable[[Config, Sequence[Path], BoundLogger], Fixture]
"""Type of the function that builds the fixture."""

ManagerFactory = Callable[..., ReconciliationManager]
"""Type of the function that builds the manager.

Called with the connection and scheme as positional arguments and
``registry`` and ``logger`` as keyword arguments, matching
`ReconciliationManager.create`.
"""

ManagerSetup = Callable[[Context, ReconciliationManager], None]
"""Type of the indexer and reconciler registration callbacks."""


@dataclass
class RunInput:
    """What to run and how to set it up."""

    test_body: Callable[[], int]
    """Runs the tests and returns the process exit code."""

    crd_paths: Sequence[Path] | None = None
    """CRD files or directories. If empty, ``Config.crd_paths`` is used."""

    setup_reconcilers: ManagerSetup | None = None
    """Registers reconcilers. Called after ``setup_indexers``."""

    setup_indexers: ManagerSetup | None = None
    """Registers indexers. Called after ``setup_env``."""

    setup_env: Callable[[Environment], None] | None = None
    """Customizes the environment. Called first."""

    config: Config | None = None
    """Configuration. Loaded from the environment if not given."""

    scheme: Scheme | None = None
    """Resource types. Defaults to the built-in Kubernetes kinds."""

    logger: BoundLogger | None = None
    """Logger. Defaults to the ``kopf_envtest`` logger."""

    registry: kopf.OperatorRegistry | None = None
    """Kopf registry. Defaults to a new, empty registry."""


def terminate_process(code: int) -> NoReturn:
    """Flush output and exit immediately, from any thread."""
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


def pytest_body(args: Sequence[str] = ()) -> Callable[[], int]:
    """Build a test body that runs pytest with the given arguments."""

    def body() -> int:
        return int(pytest.main(list(args)))

    return body


class _FatalPolicy:
    """Log and terminate, at most once per run.

    The manager thread reports failures with `report`, which must return
    normally since it runs as a future callback. The orchestrator thread uses
    `fail`, which also unwinds the run if ``terminate`` returns.
    """

    def __init__(
        self, terminate: Callable[[int], Any], logger: BoundLogger
    ) -> None:
        self._terminate = terminate
        self._logger = logger
        self._lock = threading.Lock()
        self.triggered = False

    def report(self, message: str, error: BaseException) -> None:
        with self._lock:
            if self.triggered:
                return
            self.triggered = True
        self._logger.critical(
            message, error=str(error), error_type=type(error).__name__
        )
        self._terminate(FATAL_EXIT_CODE)

    def fail(self, message: str, error: BaseException) -> NoReturn:
        self.report(message, error)
        raise SystemExit(FATAL_EXIT_CODE) from error


class Orchestrator:
    """Runs one test run from fixture start to fixture stop.

    Parameters
    ----------
    fixture_factory
        Builds the fixture. Defaults to `build_fixture`.
    manager_factory
        Builds the manager. Defaults to `ReconciliationManager.create`.
    terminate
        Called with the exit status on a fatal error. Defaults to
        `terminate_process`. If it returns, the run is unwound with
        `SystemExit`.
    readiness_poll_interval
        How often the readiness wait checks for a dead manager or a cancelled
        context. The wait itself has no timeout.
    """

    def __init__(
        self,
        *,
        fixture_factory: FixtureFactory = build_fixture,
        manager_factory: ManagerFactory = ReconciliationManager.create,
        terminate: Callable[[int], Any] = terminate_process,
        readiness_poll_interval: float = READINESS_POLL_INTERVAL,
    ) -> None:
        self._fixture_factory = fixture_factory
        self._manager_factory = manager_factory
        self._terminate = terminate
        self._poll_interval = readiness_poll_interval

    def run(self, context: Context, run_input: RunInput) -> int:
        """Run the tests in a fresh environment.

        Parameters
        ----------
        context
            Parent context. Cancelling it stops the run. Before the manager
            is ready this skips the test body, which is the hook for wrapping
            the run in an external timeout.
        run_input
            What to run.

        Returns
        -------
        int
            Exit code of the test body, or ``INTERRUPTED_EXIT_CODE`` if the
            context was cancelled before the manager became ready.

        Raises
        ------
        SystemExit
            Raised after a fatal error if ``terminate`` returned.
        RuntimeError
            Raised, before anything is started, if called from a thread with
            a running event loop. The fixture and the manager both run their
            own event loops, so this must be called from synchronous code.
        """
        config = run_input.config or Config()
        if _in_event_loop():
            msg = "Orchestrator.run cannot be called from an event loop"
            raise RuntimeError(msg)
        logger = run_input.logger or structlog.get_logger(LOGGER_NAME)
        scheme = run_input.scheme or Scheme.default()
        crd_paths = run_input.crd_paths or config.crd_paths
        policy = _FatalPolicy(self._terminate, logger)
        ctx = context.child()

        fixture = self._fixture_factory(config, crd_paths, logger)
        try:
            connection = fixture.start()
        except Exception as e:
            policy.fail("Cannot start control plane", e)
        manager = self._build_manager(
            fixture, connection, scheme, run_input, policy, logger
        )

        env = Environment(fixture, manager, ctx, logger)
        task: Future[None] | None = None
        try:
            if run_input.setup_env:
                run_input.setup_env(env)
            if run_input.setup_indexers:
                run_input.setup_indexers(ctx, manager)
            if run_input.setup_reconcilers:
                run_input.setup_reconcilers(ctx, manager)

            task = self._start_manager(manager, ctx, policy, logger)
            ready = self._wait_for_readiness(
                manager.readiness_signal(), task, ctx, policy
            )
            if not ready:
                logger.warning("Cancelled before manager became ready")
                return INTERRUPTED_EXIT_CODE

            logger.info("Manager ready, running tests")
            set_environment(env)
            try:
                exit_code = run_input.test_body()
            finally:
                set_environment(None)
            logger.info("Tests finished", exit_code=exit_code)
        finally:
            self._shutdown(env, task, config, policy, logger)

        # The manager died while the tests were running and terminate
        # returned. The tests cannot be trusted.
        if policy.triggered:
            raise SystemExit(FATAL_EXIT_CODE)
        return exit_code

    def _build_manager(
        self,
        fixture: Fixture,
        connection: Connection,
        scheme: Scheme,
        run_input: RunInput,
        policy: _FatalPolicy,
        logger: BoundLogger,
    ) -> ReconciliationManager:
        try:
            scheme.add_crds(fixture.crds)
            return self._manager_factory(
                connection, scheme, registry=run_input.registry, logger=logger
            )
        except (CRDLoadError, ManagerBuildError) as e:
            try:
                fixture.stop()
            except FixtureStopError as stop_error:
                logger.exception(
                    "Cannot stop control plane", error=str(stop_error)
                )
            policy.fail("Cannot build manager", e)

    def _start_manager(
        self,
        manager: ReconciliationManager,
        ctx: Context,
        policy: _FatalPolicy,
        logger: BoundLogger,
    ) -> Future[None]:
        """Run the manager in a thread and return its eventual result."""
        task: Future[None] = Future()

        def supervise() -> None:
            if not task.set_running_or_notify_cancel():
                return
            try:
                manager.start(ctx)
            except BaseException as e:
                task.set_exception(e)
            else:
                task.set_result(None)

        task.add_done_callback(
            partial(self._on_manager_exit, ctx, policy, logger)
        )
        thread = threading.Thread(
            target=supervise, name="kopf-envtest-manager", daemon=True
        )
        thread.start()
        return task

    def _on_manager_exit(
        self,
        ctx: Context,
        policy: _FatalPolicy,
        logger: BoundLogger,
        task: Future[None],
    ) -> None:
        error = task.exception()
        if error is None:
            if ctx.cancelled:
                logger.debug("Manager exited after cancellation")
                return
            error = ManagerRuntimeError("Manager exited before shutdown")
        policy.report("Manager failed", error)

    def _wait_for_readiness(
        self,
        readiness: ReadinessSignal,
        task: Future[None],
        ctx: Context,
        policy: _FatalPolicy,
    ) -> bool:
        """Block until the manager is ready, with no timeout.

        Returns
        -------
        bool
            `True` if the manager became ready, `False` if the context was
            cancelled first.
        """
        while not readiness.wait(self._poll_interval):
            if ctx.cancelled:
                return False
            if task.done():
                error = task.exception() or ManagerRuntimeError(
                    "Manager exited before becoming ready"
                )
                policy.fail("Manager failed", error)
        return True

    def _shutdown(
        self,
        env: Environment,
        task: Future[None] | None,
        config: Config,
        policy: _FatalPolicy,
        logger: BoundLogger,
    ) -> None:
        """Cancel the manager, let it wind down, then stop the fixture."""
        logger.info("Shutting down test environment")
        env.cancel()
        if task:
            timeout = config.control_plane_stop_timeout.total_seconds()
            wait([task], timeout=timeout)
            if not task.done():
                logger.warning("Manager still running after cancellation")
        try:
            env.stop()
        except FixtureStopError as e:
            policy.fail("Cannot stop control plane", e)


def _in_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def run(run_input: RunInput, context: Context | None = None) -> int:
    """Configure logging and run the tests with the default orchestrator.

    Parameters
    ----------
    run_input
        What to run.
    context
        Parent context, if the caller wants to be able to cancel the run.

    Returns
    -------
    int
        Exit code of the test body.
    """
    config = run_input.config or Config()
    config.configure_logging()
    run_input = replace(run_input, config=config)
    return Orchestrator().run(context or Context.background(), run_input)
