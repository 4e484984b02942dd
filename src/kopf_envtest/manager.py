"""Kopf operator embedded as the reconciliation manager of a test run."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterable
from typing import Any, Self

import kopf
from aiohttp import ClientError
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    Configuration,
    VersionApi,
)
from structlog.stdlib import BoundLogger

from .client import Client
from .constants import CACHE_SYNC_RETRY_INTERVAL, KUBERNETES_WATCH_TIMEOUT
from .context import Context
from .exceptions import (
    KubernetesError,
    ManagerBuildError,
    ManagerRuntimeError,
)
from .fixture import Connection
from .scheme import ResourceType, Scheme

__all__ = [
    "DEFAULT_RECONCILER_EVENTS",
    "ReadinessSignal",
    "ReconciliationManager",
]

DEFAULT_RECONCILER_EVENTS = ("create", "update", "resume")
"""Kopf causes a reconciler is registered for unless told otherwise."""

_EVENT_DECORATORS: dict[str, Callable[..., Any]] = {
    "create": kopf.on.create,
    "update": kopf.on.update,
    "resume": kopf.on.resume,
    "delete": kopf.on.delete,
}


class ReadinessSignal:
    """One-shot signal that the manager is ready to reconcile.

    The manager sets it only after Kopf has finished its startup (login and
    startup handlers) and an initial list of every kind with a registered
    indexer or reconciler has succeeded, so the API server is reachable and
    serves all watched resources. Callers can only observe it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def is_set(self) -> bool:
        """Whether the manager has become ready."""
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the manager is ready.

        Parameters
        ----------
        timeout
            Maximum time to wait in seconds, or `None` to wait forever.

        Returns
        -------
        bool
            Whether the manager is ready.
        """
        return self._event.wait(timeout)


class ReconciliationManager:
    """Runs reconcilers and indexers against the test control plane.

    This wraps a private Kopf registry and settings object, so handlers
    registered here never leak into other operators in the same process.
    Create instances with `create` rather than the constructor.

    Parameters
    ----------
    connection
        Connection to the API server.
    client
        Typed client, passed to every handler as ``memo.client``.
    registry
        Kopf registry holding the handlers.
    logger
        Logger to use.
    """

    @classmethod
    def create(
        cls,
        connection: Connection,
        scheme: Scheme,
        *,
        registry: kopf.OperatorRegistry | None = None,
        logger: BoundLogger,
    ) -> Self:
        """Bind a new manager to a running control plane.

        Parameters
        ----------
        connection
            Connection to the API server of the fixture.
        scheme
            Registry of resource types, including the installed CRDs.
        registry
            Kopf registry to add handlers to. A new, empty one is created if
            not given.
        logger
            Logger to use.

        Returns
        -------
        ReconciliationManager
            The new manager, not yet started.

        Raises
        ------
        ManagerBuildError
            Raised if the API server cannot be reached with the connection.
        """
        configuration = connection.to_configuration()
        try:
            version = asyncio.run(_server_version(configuration))
        except (ApiException, ClientError, OSError) as e:
            msg = f"Cannot reach API server at {connection.host}: {e!s}"
            raise ManagerBuildError(msg) from e
        logger.debug("Connected to API server", version=version)
        client = Client(configuration, scheme, logger)
        registry = registry or kopf.OperatorRegistry()
        return cls(connection, client, registry, logger)

    def __init__(
        self,
        connection: Connection,
        client: Client,
        registry: kopf.OperatorRegistry,
        logger: BoundLogger,
    ) -> None:
        self._connection = connection
        self._client = client
        self._registry = registry
        self._logger = logger
        self._readiness = ReadinessSignal()
        self._watched: list[ResourceType] = []
        self._settings = kopf.OperatorSettings()
        self._settings.watching.server_timeout = KUBERNETES_WATCH_TIMEOUT
        self._settings.watching.client_timeout = KUBERNETES_WATCH_TIMEOUT + 60
        self._started = False

        kopf.on.login(registry=self._registry)(self._login)

    @property
    def client(self) -> Client:
        """Typed client bound to the control plane."""
        return self._client

    @property
    def registry(self) -> kopf.OperatorRegistry:
        """Kopf registry, for callers that want to use Kopf decorators."""
        return self._registry

    @property
    def settings(self) -> kopf.OperatorSettings:
        """Kopf settings, which may be adjusted before the manager starts."""
        return self._settings

    def readiness_signal(self) -> ReadinessSignal:
        """Return the signal that fires once the manager is ready."""
        return self._readiness

    def register_indexer(
        self,
        kind: str,
        fn: Callable[..., Any],
        *,
        api_version: str | None = None,
        **filters: Any,
    ) -> None:
        """Maintain an in-memory index over objects of a kind.

        The index is available to handlers as a keyword argument named after
        the indexer function, as usual for Kopf.

        Parameters
        ----------
        kind
            Kind to index.
        fn
            Kopf indexing function.
        api_version
            ``apiVersion`` of the kind, if the kind alone is ambiguous.
        **filters
            Additional Kopf filters, such as ``labels`` or ``when``.

        Raises
        ------
        UnknownResourceTypeError
            Raised if the kind is not in the scheme.
        """
        resource_type = self._client.scheme.lookup(kind, api_version)
        kopf.index(
            resource_type.api_version,
            resource_type.plural,
            registry=self._registry,
            **filters,
        )(fn)
        self._watch(resource_type)
        self._logger.debug("Registered indexer", kind=kind, fn=fn.__name__)

    def register_reconciler(
        self,
        kind: str,
        fn: Callable[..., Any],
        *,
        api_version: str | None = None,
        events: Iterable[str] = DEFAULT_RECONCILER_EVENTS,
        **filters: Any,
    ) -> None:
        """Call a function whenever objects of a kind change.

        Parameters
        ----------
        kind
            Kind to reconcile.
        fn
            Kopf change handler.
        api_version
            ``apiVersion`` of the kind, if the kind alone is ambiguous.
        events
            Kopf causes to handle: any of ``create``, ``update``, ``resume``,
            and ``delete``.
        **filters
            Additional Kopf filters, such as ``labels`` or ``when``.

        Raises
        ------
        UnknownResourceTypeError
            Raised if the kind is not in the scheme.
        ValueError
            Raised if an event is not one of the supported causes.
        """
        resource_type = self._client.scheme.lookup(kind, api_version)
        for event in events:
            if event not in _EVENT_DECORATORS:
                raise ValueError(f"Unknown reconciler event {event}")
            decorator = _EVENT_DECORATORS[event]
            decorator(
                resource_type.api_version,
                resource_type.plural,
                registry=self._registry,
                **filters,
            )(fn)
        self._watch(resource_type)
        self._logger.debug(
            "Registered reconciler",
            kind=kind,
            fn=fn.__name__,
            events=list(events),
        )

    def start(self, context: Context) -> None:
        """Run the operator until the context is cancelled.

        This blocks, running Kopf in a new event loop on the calling thread,
        and is normally run in a background thread.

        Parameters
        ----------
        context
            Cancelling this context stops the operator.

        Raises
        ------
        ManagerRuntimeError
            Raised if the operator fails or was already started.
        """
        if self._started:
            raise ManagerRuntimeError("Manager was already started")
        self._started = True
        self._logger.info("Starting manager")
        try:
            asyncio.run(self._operate(context))
        except asyncio.CancelledError:
            if not context.cancelled:
                raise ManagerRuntimeError("Manager was cancelled") from None
        except Exception as e:
            raise ManagerRuntimeError(f"Manager failed: {e!s}") from e
        self._logger.info("Manager stopped")

    async def _operate(self, context: Context) -> None:
        started = asyncio.Event()
        sync = asyncio.create_task(self._wait_for_sync(started))
        try:
            await kopf.operator(
                registry=self._registry,
                settings=self._settings,
                memo=kopf.Memo(client=self._client),
                clusterwide=True,
                standalone=True,
                ready_flag=started,
                stop_flag=context.stop_flag,
            )
        finally:
            sync.cancel()
            await asyncio.gather(sync, return_exceptions=True)

    async def _wait_for_sync(self, started: asyncio.Event) -> None:
        """Set the readiness signal once every watched kind can be listed.

        Failures are retried until they succeed or the operator stops, since
        readiness has no timeout of its own.
        """
        await started.wait()
        for resource_type in self._watched:
            while True:
                try:
                    await self._client.list(
                        resource_type.kind,
                        api_version=resource_type.api_version,
                    )
                except KubernetesError as e:
                    self._logger.debug(
                        "Initial list failed, retrying",
                        kind=resource_type.kind,
                        error=str(e),
                    )
                    await asyncio.sleep(CACHE_SYNC_RETRY_INTERVAL)
                else:
                    break
        self._logger.info("Manager ready")
        self._readiness._event.set()

    def _watch(self, resource_type: ResourceType) -> None:
        if resource_type not in self._watched:
            self._watched.append(resource_type)

    def _login(self, **_: Any) -> kopf.ConnectionInfo:
        """Authenticate Kopf with the fixture's credentials."""
        return self._connection.to_connection_info()


async def _server_version(configuration: Configuration) -> str:
    async with ApiClient(configuration) as api_client:
        version = await VersionApi(api_client).get_code()
        return version.git_version
