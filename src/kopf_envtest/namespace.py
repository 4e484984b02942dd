"""Creation of uniquely-named namespaces for test isolation."""

from __future__ import annotations

from kubernetes_asyncio.client import V1Namespace, V1ObjectMeta
from structlog.stdlib import BoundLogger

from .client import Client
from .exceptions import (
    KubernetesError,
    ResourceCreationError,
    UnknownResourceTypeError,
)

__all__ = ["NamespaceProvisioner"]


class NamespaceProvisioner:
    """Create namespaces whose names are generated by the API server.

    Each test gets its own namespace so that tests cannot see each other's
    objects. Namespaces are never deleted, since the whole control plane is
    thrown away at the end of the run and deleting namespaces in Kubernetes is
    slow.

    Parameters
    ----------
    client
        Typed client bound to the test control plane.
    logger
        Logger to use.
    """

    def __init__(self, client: Client, logger: BoundLogger) -> None:
        self._client = client
        self._logger = logger

    async def create_namespace(self, prefix: str) -> V1Namespace:
        """Create a namespace named with a prefix and a generated suffix.

        The request is made exactly once. The caller decides whether a
        failure is worth retrying.

        Parameters
        ----------
        prefix
            Prefix of the namespace name. A hyphen is appended and the API
            server adds a random suffix.

        Returns
        -------
        V1Namespace
            The created namespace, whose ``metadata.name`` is the full
            generated name.

        Raises
        ------
        ResourceCreationError
            Raised if the namespace could not be created, including when
            ``Namespace`` is not in the scheme of the client.
        """
        body = V1Namespace(
            api_version="v1",
            kind="Namespace",
            metadata=V1ObjectMeta(generate_name=f"{prefix}-"),
        )
        try:
            namespace = await self._client.create("Namespace", body)
        except (KubernetesError, UnknownResourceTypeError) as e:
            msg = f"Cannot create namespace with prefix {prefix}: {e!s}"
            raise ResourceCreationError(msg) from e
        self._logger.debug("Created namespace", name=namespace.metadata.name)
        return namespace
