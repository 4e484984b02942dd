"""Configuration for kopf-envtest.

The test harness is configured through environment variables so that the same
test suite can run against an ephemeral control plane on a developer machine
and against an existing cluster in CI without code changes. Every setting uses
the ``KOPF_ENVTEST_`` prefix. A few settings also accept the environment
variable names used by other envtest implementations, so that existing
``KUBEBUILDER_ASSETS`` and ``USE_EXISTING_CLUSTER`` setups keep working.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from safir.logging import LogLevel, Profile, configure_logging
from safir.pydantic import HumanTimedelta

from .constants import (
    CONTROL_PLANE_START_TIMEOUT,
    CONTROL_PLANE_STOP_TIMEOUT,
    CRD_INSTALL_TIMEOUT,
    DEFAULT_ASSETS_PATH,
    DEFAULT_CRD_PATH,
    LOGGER_NAME,
)
from .logging import configure_kopf_logging

__all__ = ["Config"]


class Config(BaseSettings):
    """Configuration for an envtest run."""

    model_config = SettingsConfigDict(
        env_prefix="KOPF_ENVTEST_", extra="forbid", populate_by_name=True
    )

    crd_paths: list[Path] = Field(
        [DEFAULT_CRD_PATH],
        title="CRD paths",
        description=(
            "Files or directories holding custom resource definitions to"
            " install into the control plane. Used when the caller does not"
            " pass any paths of its own."
        ),
    )

    error_if_crd_path_missing: bool = Field(
        True,
        title="Fail on missing CRD path",
        description="Whether a CRD path that does not exist is an error",
    )

    use_existing_cluster: bool = Field(
        False,
        title="Use existing cluster",
        description=(
            "Run against the cluster in the current kubeconfig instead of"
            " starting an ephemeral control plane"
        ),
        validation_alias=AliasChoices(
            "KOPF_ENVTEST_USE_EXISTING_CLUSTER",
            "USE_EXISTING_CLUSTER",
            "use_existing_cluster",
        ),
    )

    kubeconfig_path: Path | None = Field(
        None,
        title="Kubeconfig path",
        description=(
            "Kubeconfig for an existing cluster. If not set, the standard"
            " ``KUBECONFIG`` lookup is used."
        ),
    )

    kube_context: str | None = Field(
        None,
        title="Kubeconfig context",
        description="Kubeconfig context to use for an existing cluster",
    )

    assets_path: Path = Field(
        DEFAULT_ASSETS_PATH,
        title="Control plane binaries",
        description="Directory holding the etcd and kube-apiserver binaries",
        validation_alias=AliasChoices(
            "KOPF_ENVTEST_ASSETS_PATH", "KUBEBUILDER_ASSETS", "assets_path"
        ),
    )

    apiserver_extra_args: list[str] = Field(
        [],
        title="Extra API server flags",
        description="Additional command-line flags for kube-apiserver",
    )

    control_plane_start_timeout: HumanTimedelta = Field(
        CONTROL_PLANE_START_TIMEOUT,
        title="Control plane start timeout",
        description="How long to wait for etcd and the API server to be ready",
    )

    control_plane_stop_timeout: HumanTimedelta = Field(
        CONTROL_PLANE_STOP_TIMEOUT,
        title="Control plane stop timeout",
        description="How long to wait for a process to exit before killing it",
    )

    crd_install_timeout: HumanTimedelta = Field(
        CRD_INSTALL_TIMEOUT,
        title="CRD install timeout",
        description="How long to wait for installed CRDs to be established",
    )

    log_level: LogLevel = Field(
        LogLevel.INFO,
        title="Logging level",
        description="Logging level of the harness and the Kopf manager",
    )

    log_profile: Profile = Field(
        Profile.development,
        title="Logging profile",
        description=(
            "Use ``production`` for JSON logs or ``development`` for"
            " human-readable logs"
        ),
    )

    def configure_logging(self) -> None:
        """Configure process-wide logging based on this configuration."""
        configure_logging(
            name=LOGGER_NAME,
            profile=self.log_profile,
            log_level=self.log_level,
        )
        configure_kopf_logging(self.log_level, self.log_profile)
