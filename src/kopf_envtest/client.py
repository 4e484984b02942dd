"""Typed Kubernetes client bound to the test environment."""

from __future__ import annotations

import builtins
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar, cast

from aiohttp import ClientError
from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, ApiException, Configuration
from structlog.stdlib import BoundLogger

from .exceptions import KubernetesError
from .scheme import ResourceType, Scheme

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

__all__ = ["Client"]


def _convert_exception(f: F) -> F:
    """Convert Kubernetes and transport errors to KubernetesError."""

    @wraps(f)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await f(*args, **kwargs)
        except ApiException as e:
            msg = f"Kubernetes API error: {e.status} {e.reason}"
            raise KubernetesError(msg, status=e.status) from e
        except (ClientError, OSError) as e:
            msg = f"Cannot reach Kubernetes API server: {e!s}"
            raise KubernetesError(msg) from e

    return cast(F, wrapper)


def _metadata_namespace(body: Any) -> str | None:
    """Extract the namespace from an object in model or dictionary form."""
    if isinstance(body, dict):
        return body.get("metadata", {}).get("namespace")
    metadata = getattr(body, "metadata", None)
    return getattr(metadata, "namespace", None)


class Client:
    """Create, read, update, and delete any kind registered in the scheme.

    Built-in kinds are handled by the typed ``kubernetes_asyncio`` API for
    their group and return model objects such as ``V1Namespace``. Custom
    resources are handled by ``CustomObjectsApi`` and return dictionaries.

    Every call opens its own ``ApiClient``, so one instance can be shared
    between the orchestrator, the manager thread, and test cases running in
    their own event loops.

    Parameters
    ----------
    configuration
        Connection configuration for the test environment's API server.
    scheme
        Registry of known resource types.
    logger
        Logger to use.
    """

    def __init__(
        self, configuration: Configuration, scheme: Scheme, logger: BoundLogger
    ) -> None:
        self._configuration = configuration
        self._scheme = scheme
        self._logger = logger

    @property
    def configuration(self) -> Configuration:
        """Connection configuration, for building a raw ``ApiClient``."""
        return self._configuration

    @property
    def scheme(self) -> Scheme:
        """Registry of resource types this client knows about."""
        return self._scheme

    @_convert_exception
    async def create(
        self, kind: str, body: Any, *, namespace: str | None = None
    ) -> Any:
        """Create an object.

        Parameters
        ----------
        kind
            Kind of the object.
        body
            The object, as a ``kubernetes_asyncio`` model or a dictionary.
        namespace
            Namespace for namespaced kinds. Defaults to the namespace in the
            object metadata.

        Returns
        -------
        Any
            The object as created by the API server, including server-side
            fields such as a generated name.

        Raises
        ------
        KubernetesError
            Raised if the API server rejects the request or cannot be reached.
        """
        resource_type = self._scheme.lookup(kind)
        namespace = namespace or _metadata_namespace(body)
        return await self._call("create", resource_type, namespace, body=body)

    @_convert_exception
    async def get(
        self, kind: str, name: str, *, namespace: str | None = None
    ) -> Any:
        """Retrieve an object by name.

        Raises
        ------
        KubernetesError
            Raised if the object does not exist (with ``status`` 404) or the
            API call fails.
        """
        resource_type = self._scheme.lookup(kind)
        return await self._call("get", resource_type, namespace, name=name)

    @_convert_exception
    async def list(
        self,
        kind: str,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        api_version: str | None = None,
    ) -> Any:
        """List objects of a kind.

        For namespaced kinds, omitting ``namespace`` lists objects across all
        namespaces. Pass ``api_version`` if the kind alone is ambiguous.
        """
        resource_type = self._scheme.lookup(kind, api_version)
        kwargs = {"label_selector": label_selector} if label_selector else {}
        return await self._call("list", resource_type, namespace, **kwargs)

    @_convert_exception
    async def replace(
        self,
        kind: str,
        name: str,
        body: Any,
        *,
        namespace: str | None = None,
    ) -> Any:
        """Replace an existing object."""
        resource_type = self._scheme.lookup(kind)
        namespace = namespace or _metadata_namespace(body)
        return await self._call(
            "replace", resource_type, namespace, name=name, body=body
        )

    @_convert_exception
    async def patch(
        self,
        kind: str,
        name: str,
        body: Any,
        *,
        namespace: str | None = None,
    ) -> Any:
        """Patch an object.

        A list body is sent as a JSON patch, anything else as a merge patch,
        following the content type selection of ``kubernetes_asyncio``.
        """
        resource_type = self._scheme.lookup(kind)
        return await self._call(
            "patch", resource_type, namespace, name=name, body=body
        )

    @_convert_exception
    async def delete(
        self, kind: str, name: str, *, namespace: str | None = None
    ) -> Any:
        """Delete an object."""
        resource_type = self._scheme.lookup(kind)
        return await self._call("delete", resource_type, namespace, name=name)

    async def _call(
        self,
        verb: str,
        resource_type: ResourceType,
        namespace: str | None,
        *,
        name: str | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> Any:
        """Dispatch a request to the right ``kubernetes_asyncio`` API."""
        if resource_type.namespaced and not namespace and verb != "list":
            msg = f"{resource_type.kind} is namespaced but no namespace given"
            raise ValueError(msg)
        if not resource_type.namespaced:
            namespace = None
        self._logger.debug(
            f"Kubernetes {verb}",
            kind=resource_type.kind,
            name=name,
            namespace=namespace,
        )
        async with ApiClient(self._configuration) as api_client:
            if resource_type.api is None:
                api = client.CustomObjectsApi(api_client)
                method, args = self._custom_method(
                    api, verb, resource_type, namespace
                )
                if name is not None:
                    args.append(name)
            else:
                api = getattr(client, resource_type.api)(api_client)
                method = self._typed_method(
                    api, verb, resource_type, namespace
                )
                args = [a for a in (name, namespace) if a is not None]
            if body is not None:
                args.append(body)
            return await method(*args, **kwargs)

    def _custom_method(
        self,
        api: client.CustomObjectsApi,
        verb: str,
        resource_type: ResourceType,
        namespace: str | None,
    ) -> tuple[Callable[..., Awaitable[Any]], builtins.list[Any]]:
        args: builtins.list[Any] = [resource_type.group, resource_type.version]
        if namespace:
            args.append(namespace)
            scope = "namespaced"
        else:
            scope = "cluster"
        args.append(resource_type.plural)
        return getattr(api, f"{verb}_{scope}_custom_object"), args

    def _typed_method(
        self,
        api: Any,
        verb: str,
        resource_type: ResourceType,
        namespace: str | None,
    ) -> Callable[..., Awaitable[Any]]:
        verb = "read" if verb == "get" else verb
        suffix = resource_type.method_suffix
        if namespace:
            return getattr(api, f"{verb}_namespaced_{suffix}")
        elif resource_type.namespaced:
            return getattr(api, f"{verb}_{suffix}_for_all_namespaces")
        else:
            return getattr(api, f"{verb}_{suffix}")
