"""Stand-ins for the fixture, manager, and client used by orchestrator tests.

All of these record what happens to them in a shared call log so that tests
can make assertions about ordering across threads.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from kubernetes_asyncio.client import V1Namespace, V1ObjectMeta
from structlog.stdlib import BoundLogger

from kopf_envtest.config import Config
from kopf_envtest.context import Context
from kopf_envtest.exceptions import (
    FixtureStopError,
    KubernetesError,
    ManagerRuntimeError,
)
from kopf_envtest.fixture import Connection
from kopf_envtest.manager import ReadinessSignal

__all__ = [
    "CallLog",
    "FakeClient",
    "FakeFixture",
    "FakeManager",
    "FakeReadinessSignal",
    "TEST_CONNECTION",
    "TerminateRecorder",
]

TEST_CONNECTION = Connection(
    host="https://127.0.0.1:6443", token="some-token", verify_ssl=False
)
"""Connection returned by `FakeFixture`."""


class CallLog:
    """Thread-safe list of events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: list[Any] = []

    def append(self, call: Any) -> None:
        with self._lock:
            self._calls.append(call)

    @property
    def calls(self) -> list[Any]:
        with self._lock:
            return list(self._calls)


class TerminateRecorder:
    """Replacement for process termination that only records the code."""

    def __init__(self) -> None:
        self.codes: list[int] = []
        self.called = threading.Event()

    def __call__(self, code: int) -> None:
        self.codes.append(code)
        self.called.set()


class FakeFixture:
    """Fixture that starts and stops instantly."""

    def __init__(
        self,
        log: CallLog,
        *,
        start_error: Exception | None = None,
        stop_error: FixtureStopError | None = None,
        crds: list[dict[str, Any]] | None = None,
    ) -> None:
        self.log = log
        self.start_error = start_error
        self.stop_error = stop_error
        self.crds = crds or []
        self.crd_paths: list[Path] = []
        self.connection: Connection | None = None
        self.stop_hook: Callable[[], None] | None = None

    def factory(
        self, config: Config, crd_paths: Sequence[Path], logger: BoundLogger
    ) -> FakeFixture:
        """Use as the orchestrator's fixture factory."""
        self.crd_paths = list(crd_paths)
        return self

    def start(self) -> Connection:
        self.log.append("fixture.start")
        if self.start_error:
            raise self.start_error
        self.connection = TEST_CONNECTION
        return self.connection

    def stop(self) -> None:
        if self.stop_hook:
            self.stop_hook()
        self.log.append("fixture.stop")
        if self.stop_error:
            raise self.stop_error


class FakeReadinessSignal(ReadinessSignal):
    """Readiness signal that tests can fire."""

    def fire(self) -> None:
        self._event.set()


class FakeManager:
    """Manager whose run loop is scripted.

    Parameters
    ----------
    log
        Shared call log.
    mode
        ``ready`` fires readiness and runs until cancelled, ``hang`` never
        fires readiness, ``fail`` raises before becoming ready, ``exit``
        returns before becoming ready, and ``fail-later`` fires readiness and
        then raises once ``trigger`` is set.
    client
        Client to expose as ``manager.client``.
    """

    def __init__(
        self, log: CallLog, mode: str = "ready", client: Any = None
    ) -> None:
        self.log = log
        self.mode = mode
        self.client = client or FakeClient()
        self.readiness = FakeReadinessSignal()
        self.trigger = threading.Event()
        self.build_args: dict[str, Any] = {}

    def factory(
        self, connection: Connection, scheme: Any, **kwargs: Any
    ) -> Any:
        """Use as the orchestrator's manager factory."""
        self.log.append("manager.build")
        self.build_args = {"connection": connection, "scheme": scheme}
        self.build_args.update(kwargs)
        return self

    def readiness_signal(self) -> ReadinessSignal:
        return self.readiness

    def start(self, context: Context) -> None:
        self.log.append("manager.start")
        if self.mode == "fail":
            raise ManagerRuntimeError("Manager blew up")
        if self.mode == "exit":
            return
        if self.mode in ("ready", "fail-later"):
            self.log.append("manager.ready")
            self.readiness.fire()
        if self.mode == "fail-later":
            self.trigger.wait()
            raise ManagerRuntimeError("Manager blew up later")
        context.wait()
        self.log.append("manager.stopped")


class FakeClient:
    """Client that supports just enough of `~kopf_envtest.client.Client`.

    Namespaces are stored in memory and named as the API server would name
    them, with a random suffix appended to ``generateName``.
    """

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.create_calls = 0
        self.objects: dict[str, Any] = {}

    async def create(
        self, kind: str, body: Any, *, namespace: str | None = None
    ) -> Any:
        self.create_calls += 1
        if self.fail:
            raise KubernetesError("Kubernetes API error: 503", status=503)
        name = body.metadata.generate_name + os.urandom(3).hex()[:5]
        namespace_obj = V1Namespace(
            api_version="v1",
            kind="Namespace",
            metadata=V1ObjectMeta(name=name),
        )
        self.objects[name] = namespace_obj
        return namespace_obj

    async def get(
        self, kind: str, name: str, *, namespace: str | None = None
    ) -> Any:
        if name not in self.objects:
            raise KubernetesError("Kubernetes API error: 404", status=404)
        return self.objects[name]
