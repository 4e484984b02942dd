"""Test fixtures."""

from __future__ import annotations

import pytest
import structlog
from structlog.stdlib import BoundLogger

from kopf_envtest.constants import LOGGER_NAME

from .support.fakes import CallLog, FakeFixture, FakeManager, TerminateRecorder

pytest_plugins = ["pytester"]


@pytest.fixture(autouse=True)
def environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove settings from the environment that would change defaults."""
    for variable in (
        "KOPF_ENVTEST_ASSETS_PATH",
        "KOPF_ENVTEST_CRD_PATHS",
        "KOPF_ENVTEST_KUBECONFIG_PATH",
        "KOPF_ENVTEST_LOG_LEVEL",
        "KOPF_ENVTEST_USE_EXISTING_CLUSTER",
        "USE_EXISTING_CLUSTER",
    ):
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def logger() -> BoundLogger:
    return structlog.get_logger(LOGGER_NAME)


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def fake_fixture(call_log: CallLog) -> FakeFixture:
    return FakeFixture(call_log)


@pytest.fixture
def fake_manager(call_log: CallLog) -> FakeManager:
    return FakeManager(call_log)


@pytest.fixture
def terminate() -> TerminateRecorder:
    return TerminateRecorder()
