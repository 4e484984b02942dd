"""Tests for the typed Kubernetes client."""

from __future__ import annotations

from typing import Any

import pytest
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio.client import (
    ApiException,
    Configuration,
    V1ConfigMap,
    V1Namespace,
    V1ObjectMeta,
)
from structlog.stdlib import BoundLogger

from kopf_envtest import client as client_module
from kopf_envtest.client import Client
from kopf_envtest.exceptions import KubernetesError, UnknownResourceTypeError
from kopf_envtest.scheme import ResourceType, Scheme


class MockApiClient:
    def __init__(self, configuration: Any) -> None:
        self.configuration = configuration

    async def __aenter__(self) -> MockApiClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        pass


class MockApi:
    """Records every API method call made through it."""

    calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
    error: ApiException | None = None

    def __init__(self, api_client: Any) -> None:
        pass

    def __getattr__(self, name: str) -> Any:
        async def method(*args: Any, **kwargs: Any) -> Any:
            MockApi.calls.append((name, args, kwargs))
            if MockApi.error:
                raise MockApi.error
            return {"method": name}

        return method


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch, logger: BoundLogger
) -> Client:
    monkeypatch.setattr(MockApi, "calls", [])
    monkeypatch.setattr(MockApi, "error", None)
    monkeypatch.setattr(client_module, "ApiClient", MockApiClient)
    for api in ("CoreV1Api", "AppsV1Api", "CustomObjectsApi"):
        monkeypatch.setattr(k8s_client, api, MockApi)
    scheme = Scheme.default()
    scheme.add(ResourceType("example.com", "v1", "Widget", "widgets", True))
    scheme.add(ResourceType("example.com", "v1", "Gadget", "gadgets", False))
    return Client(Configuration(host="https://127.0.0.1:6443"), scheme, logger)


@pytest.mark.asyncio
async def test_builtin(client: Client) -> None:
    namespace = V1Namespace(metadata=V1ObjectMeta(generate_name="test-"))
    config_map = V1ConfigMap(
        metadata=V1ObjectMeta(name="settings", namespace="test-abcde"),
        data={"key": "value"},
    )

    await client.create("Namespace", namespace)
    await client.create("ConfigMap", config_map)
    await client.get("ConfigMap", "settings", namespace="test-abcde")
    await client.list("Pod")
    await client.list("Deployment", namespace="apps", label_selector="a=b")
    await client.replace("ConfigMap", "settings", config_map)
    await client.patch(
        "ConfigMap", "settings", {"data": {}}, namespace="test-abcde"
    )
    await client.delete("Namespace", "test-abcde")

    assert MockApi.calls == [
        ("create_namespace", (namespace,), {}),
        ("create_namespaced_config_map", ("test-abcde", config_map), {}),
        ("read_namespaced_config_map", ("settings", "test-abcde"), {}),
        ("list_pod_for_all_namespaces", (), {}),
        ("list_namespaced_deployment", ("apps",), {"label_selector": "a=b"}),
        (
            "replace_namespaced_config_map",
            ("settings", "test-abcde", config_map),
            {},
        ),
        (
            "patch_namespaced_config_map",
            ("settings", "test-abcde", {"data": {}}),
            {},
        ),
        ("delete_namespace", ("test-abcde",), {}),
    ]


@pytest.mark.asyncio
async def test_custom(client: Client) -> None:
    widget = {
        "apiVersion": "example.com/v1",
        "kind": "Widget",
        "metadata": {"name": "one", "namespace": "test-abcde"},
        "spec": {"size": 3},
    }

    result = await client.create("Widget", widget)
    assert result == {"method": "create_namespaced_custom_object"}
    await client.get("Widget", "one", namespace="test-abcde")
    await client.list("Widget")
    await client.delete("Gadget", "big")

    assert MockApi.calls == [
        (
            "create_namespaced_custom_object",
            ("example.com", "v1", "test-abcde", "widgets", widget),
            {},
        ),
        (
            "get_namespaced_custom_object",
            ("example.com", "v1", "test-abcde", "widgets", "one"),
            {},
        ),
        (
            "list_cluster_custom_object",
            ("example.com", "v1", "widgets"),
            {},
        ),
        (
            "delete_cluster_custom_object",
            ("example.com", "v1", "gadgets", "big"),
            {},
        ),
    ]


@pytest.mark.asyncio
async def test_missing_namespace(client: Client) -> None:
    with pytest.raises(ValueError, match="namespaced"):
        await client.get("ConfigMap", "settings")
    assert MockApi.calls == []


@pytest.mark.asyncio
async def test_unknown_kind(client: Client) -> None:
    with pytest.raises(UnknownResourceTypeError):
        await client.get("Sprocket", "one", namespace="test-abcde")


@pytest.mark.asyncio
async def test_api_error(client: Client) -> None:
    MockApi.error = ApiException(status=404, reason="Not Found")

    with pytest.raises(KubernetesError) as excinfo:
        await client.get("ConfigMap", "settings", namespace="test-abcde")
    assert excinfo.value.status == 404
