"""Tests for namespace provisioning."""

from __future__ import annotations

from typing import cast

import pytest
from kubernetes_asyncio.client import Configuration
from structlog.stdlib import BoundLogger

from kopf_envtest.client import Client
from kopf_envtest.exceptions import ResourceCreationError
from kopf_envtest.namespace import NamespaceProvisioner
from kopf_envtest.scheme import Scheme

from .support.fakes import FakeClient


@pytest.mark.asyncio
async def test_create_namespace(logger: BoundLogger) -> None:
    client = FakeClient()
    provisioner = NamespaceProvisioner(cast(Client, client), logger)

    first = await provisioner.create_namespace("alpha")
    second = await provisioner.create_namespace("alpha")

    names = [first.metadata.name, second.metadata.name]
    assert names[0] != names[1]
    for name in names:
        assert name.startswith("alpha-")
        assert len(name) > len("alpha-")
        seen = await client.get("Namespace", name)
        assert seen.metadata.name == name


@pytest.mark.asyncio
async def test_create_namespace_failure(logger: BoundLogger) -> None:
    client = FakeClient(fail=True)
    provisioner = NamespaceProvisioner(cast(Client, client), logger)

    with pytest.raises(ResourceCreationError):
        await provisioner.create_namespace("alpha")
    assert client.create_calls == 1


@pytest.mark.asyncio
async def test_create_namespace_unknown_kind(logger: BoundLogger) -> None:
    configuration = Configuration(host="https://127.0.0.1:6443")
    client = Client(configuration, Scheme(), logger)
    provisioner = NamespaceProvisioner(client, logger)

    with pytest.raises(ResourceCreationError, match="Namespace"):
        await provisioner.create_namespace("alpha")
