"""Handle on the running test environment."""

from __future__ import annotations

import threading

from kubernetes_asyncio.client import V1Namespace
from structlog.stdlib import BoundLogger

from .client import Client
from .context import Context
from .exceptions import EnvironmentNotRunningError, EnvironmentStoppedError
from .fixture import Fixture
from .manager import ReconciliationManager
from .namespace import NamespaceProvisioner

__all__ = ["Environment", "get_environment", "set_environment"]

_current: Environment | None = None
_current_lock = threading.Lock()


class Environment:
    """The fixture, manager, and client of one test run.

    Only the orchestrator creates environments. Test code receives one
    through the ``setup_env`` callback or `get_environment`.

    Parameters
    ----------
    fixture
        The started control plane.
    manager
        The manager bound to the control plane.
    context
        Context whose cancellation stops the manager.
    logger
        Logger to use.
    """

    def __init__(
        self,
        fixture: Fixture,
        manager: ReconciliationManager,
        context: Context,
        logger: BoundLogger,
    ) -> None:
        self._fixture = fixture
        self._manager = manager
        self._context = context
        self._logger = logger
        self._stopped = False
        self._namespaces = NamespaceProvisioner(manager.client, logger)

    @property
    def client(self) -> Client:
        """Typed client bound to the control plane.

        Raises
        ------
        EnvironmentStoppedError
            Raised if the environment has been shut down.
        """
        if self._stopped:
            raise EnvironmentStoppedError("Test environment has been stopped")
        return self._manager.client

    @property
    def fixture(self) -> Fixture:
        """The control plane fixture."""
        return self._fixture

    @property
    def manager(self) -> ReconciliationManager:
        """The reconciliation manager."""
        return self._manager

    @property
    def stopped(self) -> bool:
        """Whether the environment has been shut down."""
        return self._stopped

    def cancel(self) -> None:
        """Cancel the run context, which stops the manager."""
        self._context.cancel()

    async def create_namespace(self, prefix: str) -> V1Namespace:
        """Create a namespace with a server-generated unique name.

        See `NamespaceProvisioner.create_namespace` for details.

        Raises
        ------
        EnvironmentStoppedError
            Raised if the environment has been shut down.
        ResourceCreationError
            Raised if the namespace could not be created.
        """
        if self._stopped:
            raise EnvironmentStoppedError("Test environment has been stopped")
        return await self._namespaces.create_namespace(prefix)

    def stop(self) -> None:
        """Cancel the manager and then stop the fixture.

        Raises
        ------
        FixtureStopError
            Raised if the fixture could not be stopped.
        """
        if self._stopped:
            return
        self._stopped = True
        self.cancel()
        self._fixture.stop()


def get_environment() -> Environment:
    """Return the environment of the run in progress.

    Raises
    ------
    EnvironmentNotRunningError
        Raised if no test body is currently running.
    """
    with _current_lock:
        if _current is None:
            raise EnvironmentNotRunningError("No test environment is running")
        return _current


def set_environment(env: Environment | None) -> None:
    """Publish or clear the environment of the run in progress."""
    global _current
    with _current_lock:
        _current = env
