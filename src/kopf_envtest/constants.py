"""Constants for kopf-envtest."""

from datetime import timedelta
from pathlib import Path

__all__ = [
    "ADMIN_GROUP",
    "ADMIN_USERNAME",
    "CACHE_SYNC_RETRY_INTERVAL",
    "CONTROL_PLANE_START_TIMEOUT",
    "CONTROL_PLANE_STOP_TIMEOUT",
    "CRD_INSTALL_TIMEOUT",
    "DEFAULT_ASSETS_PATH",
    "DEFAULT_CRD_PATH",
    "FATAL_EXIT_CODE",
    "HEALTH_POLL_INTERVAL",
    "INTERRUPTED_EXIT_CODE",
    "KUBERNETES_WATCH_TIMEOUT",
    "LOGGER_NAME",
    "READINESS_POLL_INTERVAL",
    "SERVICE_CLUSTER_IP_RANGE",
]

ADMIN_GROUP = "system:masters"
"""Group granted to the bearer token of the ephemeral control plane."""

ADMIN_USERNAME = "envtest-admin"
"""User name of the bearer token of the ephemeral control plane."""

CACHE_SYNC_RETRY_INTERVAL = 0.5
"""Interval (in seconds) between attempts at the manager's initial lists."""

CONTROL_PLANE_START_TIMEOUT = timedelta(seconds=60)
"""How long to wait for etcd and the API server to report healthy."""

CONTROL_PLANE_STOP_TIMEOUT = timedelta(seconds=20)
"""How long to wait for a control plane process to exit before killing it."""

CRD_INSTALL_TIMEOUT = timedelta(seconds=30)
"""How long to wait for installed CRDs to become established."""

DEFAULT_ASSETS_PATH = Path("/usr/local/kubebuilder/bin")
"""Where to look for ``etcd`` and ``kube-apiserver`` if not configured."""

DEFAULT_CRD_PATH = Path("..") / ".." / "config" / "crd" / "bases"
"""CRD directory used when the caller does not provide any paths.

This is relative to the working directory of the test run, which matches the
usual layout of an operator repository whose tests live two levels below the
repository root.
"""

FATAL_EXIT_CODE = 255
"""Exit status of the process when the test harness itself fails."""

HEALTH_POLL_INTERVAL = 0.1
"""Interval (in seconds) between control plane health checks."""

INTERRUPTED_EXIT_CODE = 2
"""Exit status when the run is cancelled before the manager became ready.

This matches the exit status pytest uses for an interrupted session.
"""

KUBERNETES_WATCH_TIMEOUT = 60
"""Timeout (in seconds) for the manager's Kubernetes watch operations.

If this is not set, Kopf attempts to connect without a timeout. This sometimes
triggers a bug in Kubernetes where the server stops responding without closing
the connection (see https://github.com/nolar/kopf/issues/585). Instead, set an
explicit timeout. A client-side timeout will be set for one minute longer than
this timeout in case the server doesn't handle its timeout properly.
"""

LOGGER_NAME = "kopf_envtest"
"""Name of the structlog logger used by the harness."""

READINESS_POLL_INTERVAL = 0.1
"""Interval (in seconds) at which the readiness wait checks the manager.

This is not a timeout. The orchestrator waits for readiness forever, and only
wakes up at this interval to notice a dead manager or a cancelled context.
"""

SERVICE_CLUSTER_IP_RANGE = "10.0.0.0/24"
"""Service IP range of the ephemeral API server."""
