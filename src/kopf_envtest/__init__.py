"""Integration test harness for Kopf operators."""

from .client import Client
from .config import Config
from .context import Context
from .environment import Environment, get_environment
from .exceptions import (
    CRDLoadError,
    EnvironmentNotRunningError,
    EnvironmentStoppedError,
    EnvtestError,
    FixtureStartError,
    FixtureStopError,
    KubernetesError,
    ManagerBuildError,
    ManagerRuntimeError,
    ResourceCreationError,
    UnknownResourceTypeError,
)
from .fixture import (
    Connection,
    ControlPlaneFixture,
    ExistingClusterFixture,
    Fixture,
    build_fixture,
)
from .manager import ReadinessSignal, ReconciliationManager
from .namespace import NamespaceProvisioner
from .orchestrator import Orchestrator, RunInput, pytest_body, run
from .scheme import ResourceType, Scheme

__all__ = [
    "CRDLoadError",
    "Client",
    "Config",
    "Connection",
    "Context",
    "ControlPlaneFixture",
    "Environment",
    "EnvironmentNotRunningError",
    "EnvironmentStoppedError",
    "EnvtestError",
    "ExistingClusterFixture",
    "Fixture",
    "FixtureStartError",
    "FixtureStopError",
    "KubernetesError",
    "ManagerBuildError",
    "ManagerRuntimeError",
    "NamespaceProvisioner",
    "Orchestrator",
    "ReadinessSignal",
    "ReconciliationManager",
    "ResourceCreationError",
    "ResourceType",
    "RunInput",
    "Scheme",
    "UnknownResourceTypeError",
    "build_fixture",
    "get_environment",
    "pytest_body",
    "run",
]
