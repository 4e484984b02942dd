"""Tests for harness configuration."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from safir.logging import LogLevel, Profile

from kopf_envtest.config import Config
from kopf_envtest.constants import (
    CONTROL_PLANE_START_TIMEOUT,
    DEFAULT_ASSETS_PATH,
    DEFAULT_CRD_PATH,
)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("KUBEBUILDER_ASSETS", raising=False)
    config = Config()

    assert config.crd_paths == [DEFAULT_CRD_PATH]
    assert config.error_if_crd_path_missing
    assert not config.use_existing_cluster
    assert config.assets_path == DEFAULT_ASSETS_PATH
    assert config.control_plane_start_timeout == CONTROL_PLANE_START_TIMEOUT
    assert config.log_level == LogLevel.INFO
    assert config.log_profile == Profile.development


def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEBUILDER_ASSETS", "/opt/envtest/bin")
    monkeypatch.setenv("USE_EXISTING_CLUSTER", "true")
    monkeypatch.setenv("KOPF_ENVTEST_CRD_PATHS", '["crds", "more/crds"]')
    monkeypatch.setenv("KOPF_ENVTEST_CONTROL_PLANE_START_TIMEOUT", "2m")
    monkeypatch.setenv("KOPF_ENVTEST_LOG_LEVEL", "DEBUG")

    config = Config()

    assert config.assets_path == Path("/opt/envtest/bin")
    assert config.use_existing_cluster
    assert config.crd_paths == [Path("crds"), Path("more/crds")]
    assert config.control_plane_start_timeout == timedelta(minutes=2)
    assert config.log_level == LogLevel.DEBUG


def test_prefixed_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEBUILDER_ASSETS", "/opt/envtest/bin")
    monkeypatch.setenv("KOPF_ENVTEST_ASSETS_PATH", "/usr/local/envtest")
    monkeypatch.setenv("KOPF_ENVTEST_USE_EXISTING_CLUSTER", "true")

    config = Config()

    assert config.assets_path == Path("/usr/local/envtest")
    assert config.use_existing_cluster


def test_arguments() -> None:
    config = Config(use_existing_cluster=True, log_level="WARNING")

    assert config.use_existing_cluster
    assert config.log_level == LogLevel.WARNING
