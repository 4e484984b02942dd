"""Pytest fixtures for tests run inside a test environment.

Enable with ``pytest_plugins = ["kopf_envtest.pytest_plugin"]`` in the
``conftest.py`` of a test suite started by ``kopf-envtest run`` or by
`kopf_envtest.run` with `kopf_envtest.pytest_body`.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from .environment import Environment, get_environment
from .exceptions import EnvironmentNotRunningError

__all__ = ["envtest", "namespace"]


@pytest.fixture
def envtest() -> Environment:
    """Return the running test environment.

    Tests using this fixture are skipped if pytest was not started by the
    harness.
    """
    try:
        return get_environment()
    except EnvironmentNotRunningError:
        pytest.skip("Not running inside kopf-envtest")


@pytest_asyncio.fixture
async def namespace(envtest: Environment) -> str:
    """Create a uniquely-named namespace for one test.

    The namespace is not deleted afterwards. It goes away with the control
    plane at the end of the run.
    """
    created = await envtest.create_namespace("test")
    return created.metadata.name
