"""Exceptions for kopf-envtest."""

from __future__ import annotations

__all__ = [
    "CRDLoadError",
    "EnvironmentNotRunningError",
    "EnvironmentStoppedError",
    "EnvtestError",
    "FixtureStartError",
    "FixtureStopError",
    "KubernetesError",
    "ManagerBuildError",
    "ManagerRuntimeError",
    "ResourceCreationError",
    "UnknownResourceTypeError",
]


class EnvtestError(Exception):
    """Base class for all kopf-envtest exceptions."""


class FixtureStartError(EnvtestError):
    """The ephemeral control plane could not be started.

    This is fatal to the test run. The orchestrator logs it and terminates the
    process without running any tests.
    """


class FixtureStopError(EnvtestError):
    """The ephemeral control plane could not be stopped cleanly.

    This is fatal even after the tests have completed, since a leaked control
    plane would corrupt later test runs that share its ports or state.
    """


class ManagerBuildError(EnvtestError):
    """The reconciliation manager could not be bound to the control plane."""


class ManagerRuntimeError(EnvtestError):
    """The reconciliation manager stopped for a reason other than shutdown."""


class CRDLoadError(EnvtestError):
    """A custom resource definition could not be read or installed."""


class KubernetesError(EnvtestError):
    """A Kubernetes API call failed.

    Parameters
    ----------
    message
        Human-readable description of the failure.
    status
        HTTP status returned by the API server, if any.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ResourceCreationError(EnvtestError):
    """A test resource could not be created.

    This is the only recoverable error. It is raised to the caller, which is
    responsible for deciding whether to retry or skip.
    """


class UnknownResourceTypeError(EnvtestError):
    """The requested kind is not registered in the scheme."""


class EnvironmentNotRunningError(EnvtestError):
    """No test environment is currently running in this process."""


class EnvironmentStoppedError(EnvtestError):
    """The test environment was used after it was shut down."""
