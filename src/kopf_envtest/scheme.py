"""Registry of resource types known to the test environment."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Self

from .exceptions import CRDLoadError, UnknownResourceTypeError

__all__ = [
    "BUILTIN_RESOURCE_TYPES",
    "ResourceType",
    "Scheme",
]

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class ResourceType:
    """A kind of Kubernetes resource and how to reach it through the API."""

    group: str
    """API group, or the empty string for the core group."""

    version: str
    """API version within the group."""

    kind: str
    """Kind, such as ``ConfigMap``."""

    plural: str
    """Plural resource name used in API paths, such as ``configmaps``."""

    namespaced: bool
    """Whether objects of this kind live in a namespace."""

    api: str | None = None
    """Name of the typed ``kubernetes_asyncio`` API class for built-in kinds.

    `None` for custom resources, which are handled by ``CustomObjectsApi``.
    """

    @property
    def api_version(self) -> str:
        """The ``apiVersion`` of objects of this kind."""
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def method_suffix(self) -> str:
        """Suffix of the typed API methods for this kind.

        The generated Kubernetes clients name their methods after the kind in
        snake case, so ``ConfigMap`` is served by
        ``create_namespaced_config_map`` and similar methods.
        """
        return _CAMEL_BOUNDARY.sub("_", self.kind).lower()

    @classmethod
    def from_crd(cls, crd: dict[str, Any]) -> Self:
        """Build the resource type defined by a custom resource definition.

        Parameters
        ----------
        crd
            The ``CustomResourceDefinition`` in dictionary form.

        Returns
        -------
        ResourceType
            The resource type for the storage version of the CRD, or its
            first version if none is marked as the storage version.

        Raises
        ------
        CRDLoadError
            Raised if the CRD is missing required fields.
        """
        try:
            spec = crd["spec"]
            versions = spec["versions"]
            storage = [v for v in versions if v.get("storage")]
            version = (storage or versions)[0]["name"]
            return cls(
                group=spec["group"],
                version=version,
                kind=spec["names"]["kind"],
                plural=spec["names"]["plural"],
                namespaced=spec.get("scope", "Namespaced") == "Namespaced",
            )
        except (KeyError, IndexError, TypeError) as e:
            name = crd.get("metadata", {}).get("name", "<unnamed>")
            msg = f"CustomResourceDefinition {name} is malformed: {e!s}"
            raise CRDLoadError(msg) from e


BUILTIN_RESOURCE_TYPES = (
    ResourceType("", "v1", "ConfigMap", "configmaps", True, "CoreV1Api"),
    ResourceType("", "v1", "Event", "events", True, "CoreV1Api"),
    ResourceType("", "v1", "Namespace", "namespaces", False, "CoreV1Api"),
    ResourceType("", "v1", "Pod", "pods", True, "CoreV1Api"),
    ResourceType("", "v1", "Secret", "secrets", True, "CoreV1Api"),
    ResourceType("", "v1", "Service", "services", True, "CoreV1Api"),
    ResourceType(
        "", "v1", "ServiceAccount", "serviceaccounts", True, "CoreV1Api"
    ),
    ResourceType("apps", "v1", "DaemonSet", "daemonsets", True, "AppsV1Api"),
    ResourceType(
        "apps", "v1", "Deployment", "deployments", True, "AppsV1Api"
    ),
    ResourceType(
        "apps", "v1", "StatefulSet", "statefulsets", True, "AppsV1Api"
    ),
    ResourceType("batch", "v1", "CronJob", "cronjobs", True, "BatchV1Api"),
    ResourceType("batch", "v1", "Job", "jobs", True, "BatchV1Api"),
    ResourceType(
        "networking.k8s.io",
        "v1",
        "Ingress",
        "ingresses",
        True,
        "NetworkingV1Api",
    ),
    ResourceType(
        "rbac.authorization.k8s.io",
        "v1",
        "ClusterRole",
        "clusterroles",
        False,
        "RbacAuthorizationV1Api",
    ),
    ResourceType(
        "rbac.authorization.k8s.io",
        "v1",
        "ClusterRoleBinding",
        "clusterrolebindings",
        False,
        "RbacAuthorizationV1Api",
    ),
    ResourceType(
        "rbac.authorization.k8s.io",
        "v1",
        "Role",
        "roles",
        True,
        "RbacAuthorizationV1Api",
    ),
    ResourceType(
        "rbac.authorization.k8s.io",
        "v1",
        "RoleBinding",
        "rolebindings",
        True,
        "RbacAuthorizationV1Api",
    ),
    ResourceType(
        "apiextensions.k8s.io",
        "v1",
        "CustomResourceDefinition",
        "customresourcedefinitions",
        False,
        "ApiextensionsV1Api",
    ),
)
"""Built-in kinds registered by `Scheme.default`."""


class Scheme:
    """Registry of the resource types a test environment can work with.

    The typed client and the manager look up kinds here to learn their API
    group, version, plural, and scope. There is no process-wide instance:
    create one with `default` (or empty with the constructor) and pass it
    explicitly to whatever needs it.
    """

    def __init__(self) -> None:
        self._types: dict[str, list[ResourceType]] = {}

    @classmethod
    def default(cls) -> Self:
        """Create a scheme holding the common built-in Kubernetes kinds."""
        scheme = cls()
        scheme.add_all(BUILTIN_RESOURCE_TYPES)
        return scheme

    def __contains__(self, kind: object) -> bool:
        return kind in self._types

    def __iter__(self) -> Iterator[ResourceType]:
        for resource_types in self._types.values():
            yield from resource_types

    def add(self, resource_type: ResourceType) -> None:
        """Register a resource type.

        Registering the same type twice is harmless. Registering a different
        type with the same kind and ``apiVersion`` replaces the old one, which
        happens when a CRD is reinstalled with a new plural or scope.

        Parameters
        ----------
        resource_type
            Resource type to add.
        """
        known = self._types.setdefault(resource_type.kind, [])
        for i, existing in enumerate(known):
            if existing.api_version == resource_type.api_version:
                known[i] = resource_type
                return
        known.append(resource_type)

    def add_all(self, resource_types: Iterable[ResourceType]) -> None:
        """Register several resource types."""
        for resource_type in resource_types:
            self.add(resource_type)

    def add_crds(self, crds: Iterable[dict[str, Any]]) -> None:
        """Register the kinds defined by custom resource definitions.

        Parameters
        ----------
        crds
            ``CustomResourceDefinition`` objects in dictionary form.

        Raises
        ------
        CRDLoadError
            Raised if one of the CRDs is malformed.
        """
        self.add_all(ResourceType.from_crd(crd) for crd in crds)

    def lookup(
        self, kind: str, api_version: str | None = None
    ) -> ResourceType:
        """Find the resource type for a kind.

        Parameters
        ----------
        kind
            Kind to look up.
        api_version
            ``apiVersion`` to disambiguate kinds that exist in several API
            groups. Optional if the kind is unique.

        Returns
        -------
        ResourceType
            The registered resource type.

        Raises
        ------
        UnknownResourceTypeError
            Raised if the kind is not registered, or is registered in more
            than one API group and ``api_version`` was not given.
        """
        candidates = self._types.get(kind, [])
        if api_version:
            candidates = [
                c for c in candidates if c.api_version == api_version
            ]
        if not candidates:
            name = f"{api_version}/{kind}" if api_version else kind
            raise UnknownResourceTypeError(f"Unknown resource type {name}")
        if len(candidates) > 1:
            versions = ", ".join(c.api_version for c in candidates)
            msg = f"Kind {kind} is ambiguous, specify one of {versions}"
            raise UnknownResourceTypeError(msg)
        return candidates[0]
