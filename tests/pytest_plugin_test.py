"""Tests for the pytest plugin."""

from __future__ import annotations

from typing import Any

import pytest
from kubernetes_asyncio.client import V1Namespace, V1ObjectMeta

from kopf_envtest.environment import set_environment

TEST_MODULE = """
import pytest

pytest_plugins = ["kopf_envtest.pytest_plugin"]


def test_envtest(envtest):
    assert envtest.client == "some-client"


@pytest.mark.asyncio
async def test_namespace(namespace):
    assert namespace.startswith("test-")
"""


class StubEnvironment:
    """Just enough of an environment for the plugin fixtures."""

    client = "some-client"

    async def create_namespace(self, prefix: str) -> V1Namespace:
        return V1Namespace(metadata=V1ObjectMeta(name=f"{prefix}-a1b2c"))


def test_skipped_outside_run(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(TEST_MODULE)

    result = pytester.runpytest_inprocess()
    result.assert_outcomes(skipped=2)


def test_inside_run(pytester: pytest.Pytester) -> None:
    pytester.makepyfile(TEST_MODULE)
    env: Any = StubEnvironment()

    set_environment(env)
    try:
        result = pytester.runpytest_inprocess()
    finally:
        set_environment(None)
    result.assert_outcomes(passed=2)
