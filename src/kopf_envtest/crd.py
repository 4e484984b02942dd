"""Load and install custom resource definitions."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import yaml
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    ApiextensionsV1Api,
    Configuration,
)
from structlog.stdlib import BoundLogger

from .constants import HEALTH_POLL_INTERVAL
from .exceptions import CRDLoadError

__all__ = ["install_crds", "load_crds"]

_CRD_SUFFIXES = (".json", ".yaml", ".yml")


def load_crds(
    paths: Sequence[Path], *, error_if_missing: bool = True
) -> list[dict[str, Any]]:
    """Read custom resource definitions from disk.

    Each path may be a file or a directory. Directories are scanned (not
    recursively) for YAML and JSON files in sorted order. Documents in those
    files that are not ``CustomResourceDefinition`` objects are ignored, so
    the usual output of ``kustomize`` or ``controller-gen`` can be used as is.

    Parameters
    ----------
    paths
        Files or directories to read, in order.
    error_if_missing
        Whether a path that does not exist is an error. If false, it is
        silently skipped.

    Returns
    -------
    list of dict
        The custom resource definitions in dictionary form.

    Raises
    ------
    CRDLoadError
        Raised if a path does not exist (and ``error_if_missing`` is set), a
        file cannot be parsed, or a CRD has no name.
    """
    crds = []
    for path in paths:
        if not path.exists():
            if error_if_missing:
                raise CRDLoadError(f"CRD path {path} does not exist")
            continue
        if path.is_dir():
            files = sorted(
                p for p in path.iterdir() if p.suffix in _CRD_SUFFIXES
            )
        else:
            files = [path]
        for crd_file in files:
            try:
                with crd_file.open("r") as fh:
                    documents = list(yaml.safe_load_all(fh))
            except (OSError, yaml.YAMLError) as e:
                raise CRDLoadError(f"Cannot read {crd_file}: {e!s}") from e
            for document in documents:
                if not isinstance(document, dict):
                    continue
                if document.get("kind") != "CustomResourceDefinition":
                    continue
                _crd_name(document, crd_file)
                crds.append(document)
    return crds


async def install_crds(
    configuration: Configuration,
    crds: Sequence[dict[str, Any]],
    *,
    timeout: float,
    logger: BoundLogger,
) -> None:
    """Install custom resource definitions and wait until they are served.

    A CRD that already exists (409 Conflict) is left alone, which is the
    normal case when reusing an existing cluster across test runs.

    Parameters
    ----------
    configuration
        Connection configuration for the API server.
    crds
        The custom resource definitions to install.
    timeout
        How long to wait, in seconds, for all CRDs to be established.
    logger
        Logger to use.

    Raises
    ------
    CRDLoadError
        Raised if the API server rejects a CRD or the CRDs do not become
        established in time.
    """
    async with ApiClient(configuration) as api_client:
        extensions_api = ApiextensionsV1Api(api_client)
        for crd in crds:
            name = _crd_name(crd)
            try:
                await extensions_api.create_custom_resource_definition(crd)
            except ApiException as e:
                if e.status == 409:
                    logger.debug("CRD already installed", crd=name)
                    continue
                msg = f"Cannot install CRD {name}: {e.status} {e.reason}"
                raise CRDLoadError(msg) from e
            logger.debug("Installed CRD", crd=name)
        try:
            async with asyncio.timeout(timeout):
                for crd in crds:
                    await _wait_for_established(
                        extensions_api, _crd_name(crd)
                    )
        except TimeoutError as e:
            msg = f"CRDs not established after {timeout}s"
            raise CRDLoadError(msg) from e


async def _wait_for_established(api: ApiextensionsV1Api, name: str) -> None:
    """Poll a CRD until its ``Established`` condition is true."""
    while True:
        crd = await api.read_custom_resource_definition(name)
        conditions = (crd.status.conditions if crd.status else None) or []
        for condition in conditions:
            if condition.type == "Established" and condition.status == "True":
                return
        await asyncio.sleep(HEALTH_POLL_INTERVAL)


def _crd_name(crd: dict[str, Any], source: Path | None = None) -> str:
    """Return ``metadata.name`` of a CRD, which must be a non-empty string."""
    metadata = crd.get("metadata")
    name = metadata.get("name") if isinstance(metadata, dict) else None
    if not isinstance(name, str) or not name:
        where = f" in {source}" if source else ""
        raise CRDLoadError(f"CRD{where} has no metadata.name")
    return name
