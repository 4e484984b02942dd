"""Ephemeral control plane used as the test fixture."""

from __future__ import annotations

import asyncio
import os
import shutil
import socket
import ssl
import subprocess
import tempfile
import time
from abc import ABCMeta, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Self

import httpx
import kopf
from aiohttp import ClientError
from kubernetes_asyncio.client import ApiException, Configuration
from kubernetes_asyncio.config import ConfigException, load_kube_config
from pydantic import BaseModel
from structlog.stdlib import BoundLogger

from .certs import RSAKeyPair, generate_serving_certificate
from .config import Config
from .constants import (
    ADMIN_GROUP,
    ADMIN_USERNAME,
    HEALTH_POLL_INTERVAL,
    SERVICE_CLUSTER_IP_RANGE,
)
from .crd import install_crds, load_crds
from .exceptions import CRDLoadError, FixtureStartError, FixtureStopError

__all__ = [
    "Connection",
    "ControlPlaneFixture",
    "ExistingClusterFixture",
    "Fixture",
    "build_fixture",
]

_LOCALHOST = "127.0.0.1"


class Connection(BaseModel):
    """How to reach the API server of a fixture."""

    host: str
    """URL of the API server."""

    ca_path: Path | None = None
    """Certificate authority bundle used to verify the API server."""

    token: str | None = None
    """Bearer token, without the ``Bearer`` prefix."""

    certificate_path: Path | None = None
    """Client certificate for TLS client authentication."""

    private_key_path: Path | None = None
    """Private key for TLS client authentication."""

    verify_ssl: bool = True
    """Whether to verify the API server certificate."""

    @classmethod
    def from_configuration(cls, configuration: Configuration) -> Self:
        """Build a connection from a loaded ``kubernetes_asyncio`` config.

        Parameters
        ----------
        configuration
            Configuration populated by ``load_kube_config``.

        Returns
        -------
        Connection
            The equivalent connection descriptor.
        """
        api_key = configuration.api_key or {}
        token = api_key.get("BearerToken") or api_key.get("authorization")
        if token and token.startswith("Bearer "):
            token = token.removeprefix("Bearer ")
        return cls(
            host=configuration.host,
            ca_path=configuration.ssl_ca_cert,
            token=token,
            certificate_path=configuration.cert_file,
            private_key_path=configuration.key_file,
            verify_ssl=configuration.verify_ssl,
        )

    def to_configuration(self) -> Configuration:
        """Build a ``kubernetes_asyncio`` configuration for this connection."""
        configuration = Configuration(host=self.host)
        configuration.verify_ssl = self.verify_ssl
        if self.ca_path:
            configuration.ssl_ca_cert = str(self.ca_path)
        if self.certificate_path:
            configuration.cert_file = str(self.certificate_path)
        if self.private_key_path:
            configuration.key_file = str(self.private_key_path)
        if self.token:
            configuration.api_key = {"BearerToken": self.token}
            configuration.api_key_prefix = {"BearerToken": "Bearer"}
        return configuration

    def to_connection_info(self) -> kopf.ConnectionInfo:
        """Build the Kopf login credentials for this connection."""
        return kopf.ConnectionInfo(
            server=self.host,
            ca_path=str(self.ca_path) if self.ca_path else None,
            insecure=not self.verify_ssl,
            scheme="Bearer" if self.token else None,
            token=self.token,
            certificate_path=(
                str(self.certificate_path) if self.certificate_path else None
            ),
            private_key_path=(
                str(self.private_key_path) if self.private_key_path else None
            ),
        )


class Fixture(metaclass=ABCMeta):
    """A Kubernetes control plane that lives for one test run.

    Parameters
    ----------
    config
        Harness configuration.
    crd_paths
        Files or directories of custom resource definitions to install once
        the control plane is up.
    logger
        Logger to use.
    """

    def __init__(
        self, config: Config, crd_paths: Sequence[Path], logger: BoundLogger
    ) -> None:
        self._config = config
        self._crd_paths = list(crd_paths)
        self._logger = logger
        self._connection: Connection | None = None
        self._crds: list[dict[str, Any]] = []

    @property
    def connection(self) -> Connection | None:
        """Connection to the API server, or `None` if not started."""
        return self._connection

    @property
    def crds(self) -> list[dict[str, Any]]:
        """Custom resource definitions installed by `start`."""
        return self._crds

    @abstractmethod
    def start(self) -> Connection:
        """Start the control plane and install the CRDs.

        Returns
        -------
        Connection
            How to reach the API server.

        Raises
        ------
        FixtureStartError
            Raised if the control plane could not be started or the CRDs
            could not be installed.
        """

    @abstractmethod
    def stop(self) -> None:
        """Stop the control plane.

        Raises
        ------
        FixtureStopError
            Raised if the control plane could not be stopped cleanly.
        """

    def _load_crds(self) -> list[dict[str, Any]]:
        return load_crds(
            self._crd_paths,
            error_if_missing=self._config.error_if_crd_path_missing,
        )

    async def _install_crds(
        self, connection: Connection, crds: list[dict[str, Any]]
    ) -> None:
        await install_crds(
            connection.to_configuration(),
            crds,
            timeout=self._config.crd_install_timeout.total_seconds(),
            logger=self._logger,
        )


class ControlPlaneFixture(Fixture):
    """Local etcd and kube-apiserver processes.

    The binaries are taken from the configured assets path (normally set with
    ``KUBEBUILDER_ASSETS``, which ``setup-envtest`` prints). Everything else
    the processes need, including the API server serving certificate, the
    service account signing key, and an administrator bearer token, is
    generated in a temporary directory that is deleted on `stop`.
    """

    def __init__(
        self, config: Config, crd_paths: Sequence[Path], logger: BoundLogger
    ) -> None:
        super().__init__(config, crd_paths, logger)
        self._workdir: Path | None = None
        self._etcd: subprocess.Popen[bytes] | None = None
        self._apiserver: subprocess.Popen[bytes] | None = None

    def start(self) -> Connection:
        self._logger.info(
            "Starting control plane",
            assets_path=str(self._config.assets_path),
            crd_paths=[str(p) for p in self._crd_paths],
        )
        try:
            crds = self._load_crds()
            etcd = self._find_binary("etcd")
            apiserver = self._find_binary("kube-apiserver")
            self._workdir = Path(tempfile.mkdtemp(prefix="kopf-envtest-"))
            etcd_url = self._start_etcd(etcd)
            connection = self._start_apiserver(apiserver, etcd_url)
            asyncio.run(self._install_crds(connection, crds))
        except FixtureStartError:
            self._abort()
            raise
        except (CRDLoadError, ApiException, ClientError, OSError) as e:
            self._abort()
            msg = f"Cannot start control plane: {e!s}"
            raise FixtureStartError(msg) from e
        except BaseException:
            self._abort()
            raise
        self._connection = connection
        self._crds = crds
        self._logger.info("Control plane started", host=connection.host)
        return connection

    def stop(self) -> None:
        if not self._workdir:
            return
        self._logger.info("Stopping control plane")
        errors = []
        for name, process in self._processes():
            try:
                self._stop_process(name, process)
            except (OSError, subprocess.SubprocessError) as e:
                self._logger.exception(f"Cannot stop {name}", error=str(e))
                errors.append(f"{name}: {e!s}")
        try:
            shutil.rmtree(self._workdir)
        except OSError as e:
            errors.append(f"{self._workdir}: {e!s}")
        self._workdir = None
        self._etcd = None
        self._apiserver = None
        self._connection = None
        if errors:
            msg = "Cannot stop control plane: " + "; ".join(errors)
            raise FixtureStopError(msg)

    def _abort(self) -> None:
        """Kill whatever a failed start left behind."""
        for _, process in self._processes():
            process.kill()
            process.wait()
        if self._workdir:
            shutil.rmtree(self._workdir, ignore_errors=True)
        self._workdir = None
        self._etcd = None
        self._apiserver = None

    def _find_binary(self, name: str) -> Path:
        path = self._config.assets_path / name
        if not os.access(path, os.X_OK):
            msg = (
                f"{name} not found in {self._config.assets_path} (set"
                " KUBEBUILDER_ASSETS to the output of setup-envtest)"
            )
            raise FixtureStartError(msg)
        return path

    def _processes(self) -> list[tuple[str, subprocess.Popen[bytes]]]:
        """Running processes in the order in which they should be stopped."""
        processes = [("kube-apiserver", self._apiserver), ("etcd", self._etcd)]
        return [(n, p) for n, p in processes if p is not None]

    def _start_etcd(self, binary: Path) -> str:
        assert self._workdir
        client_url = f"http://{_LOCALHOST}:{_free_port()}"
        peer_url = f"http://{_LOCALHOST}:{_free_port()}"
        self._etcd = self._spawn(
            "etcd",
            [
                str(binary),
                "--name=default",
                f"--data-dir={self._workdir / 'etcd'}",
                f"--listen-client-urls={client_url}",
                f"--advertise-client-urls={client_url}",
                f"--listen-peer-urls={peer_url}",
                f"--initial-advertise-peer-urls={peer_url}",
                f"--initial-cluster=default={peer_url}",
                "--unsafe-no-fsync=true",
            ],
        )
        self._wait_for_health("etcd", self._etcd, f"{client_url}/health")
        return client_url

    def _start_apiserver(self, binary: Path, etcd_url: str) -> Connection:
        assert self._workdir
        port = _free_port()
        host = f"https://{_LOCALHOST}:{port}"
        token = os.urandom(16).hex()

        serving_key = RSAKeyPair.generate()
        cert_path = self._workdir / "apiserver.crt"
        key_path = self._workdir / "apiserver.key"
        cert_path.write_bytes(
            generate_serving_certificate(
                serving_key, hosts=[_LOCALHOST, "localhost"]
            )
        )
        key_path.write_bytes(serving_key.private_key_as_pem())
        service_account_key = RSAKeyPair.generate()
        sa_key_path = self._workdir / "sa.key"
        sa_pub_path = self._workdir / "sa.pub"
        sa_key_path.write_bytes(service_account_key.private_key_as_pem())
        sa_pub_path.write_bytes(service_account_key.public_key_as_pem())
        tokens_path = self._workdir / "tokens.csv"
        tokens_path.write_text(
            f'{token},{ADMIN_USERNAME},{ADMIN_USERNAME},"{ADMIN_GROUP}"\n'
        )

        self._apiserver = self._spawn(
            "kube-apiserver",
            [
                str(binary),
                f"--etcd-servers={etcd_url}",
                f"--bind-address={_LOCALHOST}",
                f"--advertise-address={_LOCALHOST}",
                f"--secure-port={port}",
                f"--cert-dir={self._workdir / 'certs'}",
                f"--tls-cert-file={cert_path}",
                f"--tls-private-key-file={key_path}",
                f"--token-auth-file={tokens_path}",
                "--authorization-mode=RBAC",
                f"--service-account-issuer={host}",
                f"--service-account-key-file={sa_pub_path}",
                f"--service-account-signing-key-file={sa_key_path}",
                f"--service-cluster-ip-range={SERVICE_CLUSTER_IP_RANGE}",
                "--disable-admission-plugins=ServiceAccount",
                "--allow-privileged=true",
                *self._config.apiserver_extra_args,
            ],
        )
        connection = Connection(host=host, ca_path=cert_path, token=token)
        self._wait_for_health(
            "kube-apiserver",
            self._apiserver,
            f"{host}/readyz",
            verify=ssl.create_default_context(cafile=str(cert_path)),
            headers={"Authorization": f"Bearer {token}"},
        )
        return connection

    def _spawn(self, name: str, args: list[str]) -> subprocess.Popen[bytes]:
        assert self._workdir
        self._logger.debug(f"Starting {name}", args=args)
        with (self._workdir / f"{name}.log").open("wb") as log:
            return subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
            )

    def _stop_process(
        self, name: str, process: subprocess.Popen[bytes]
    ) -> None:
        timeout = self._config.control_plane_stop_timeout.total_seconds()
        process.terminate()
        try:
            process.wait(timeout)
        except subprocess.TimeoutExpired:
            self._logger.warning(f"Killing {name} after {timeout}s")
            process.kill()
            process.wait(timeout)
        self._logger.debug(f"Stopped {name}", status=process.returncode)

    def _wait_for_health(
        self,
        name: str,
        process: subprocess.Popen[bytes],
        url: str,
        *,
        verify: ssl.SSLContext | bool = True,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Poll a health endpoint until it returns success.

        Raises
        ------
        FixtureStartError
            Raised if the process exits or the start timeout expires first.
        """
        timeout = self._config.control_plane_start_timeout.total_seconds()
        deadline = time.monotonic() + timeout
        with httpx.Client(verify=verify, headers=headers) as client:
            while True:
                if process.poll() is not None:
                    msg = (
                        f"{name} exited with status {process.returncode}:\n"
                        + self._log_tail(name)
                    )
                    raise FixtureStartError(msg)
                try:
                    r = client.get(url, timeout=1.0)
                    if r.status_code == 200:
                        return
                except httpx.TransportError:
                    pass
                if time.monotonic() > deadline:
                    msg = f"{name} not healthy after {timeout}s"
                    raise FixtureStartError(msg)
                time.sleep(HEALTH_POLL_INTERVAL)

    def _log_tail(self, name: str, lines: int = 20) -> str:
        assert self._workdir
        log = self._workdir / f"{name}.log"
        output = log.read_text(errors="replace").splitlines()
        return "\n".join(output[-lines:])


class ExistingClusterFixture(Fixture):
    """An already-running cluster reached through a kubeconfig.

    Only the CRDs are installed. Stopping the fixture leaves the cluster and
    everything created in it alone.
    """

    def start(self) -> Connection:
        self._logger.info(
            "Using existing cluster",
            kubeconfig=str(self._config.kubeconfig_path or "default"),
            context=self._config.kube_context,
        )
        try:
            crds = self._load_crds()
            connection = asyncio.run(self._connect(crds))
        except (
            CRDLoadError,
            ApiException,
            ConfigException,
            ClientError,
            OSError,
        ) as e:
            msg = f"Cannot use existing cluster: {e!s}"
            raise FixtureStartError(msg) from e
        self._connection = connection
        self._crds = crds
        return connection

    def stop(self) -> None:
        self._logger.info("Detaching from existing cluster")
        self._connection = None

    async def _connect(self, crds: list[dict[str, Any]]) -> Connection:
        configuration = Configuration()
        kubeconfig = self._config.kubeconfig_path
        await load_kube_config(
            config_file=str(kubeconfig) if kubeconfig else None,
            context=self._config.kube_context,
            client_configuration=configuration,
        )
        connection = Connection.from_configuration(configuration)
        await self._install_crds(connection, crds)
        return connection


def build_fixture(
    config: Config, crd_paths: Sequence[Path], logger: BoundLogger
) -> Fixture:
    """Create the fixture selected by the configuration.

    Parameters
    ----------
    config
        Harness configuration.
    crd_paths
        Custom resource definitions to install.
    logger
        Logger to use.

    Returns
    -------
    Fixture
        An `ExistingClusterFixture` if ``use_existing_cluster`` is set,
        otherwise a `ControlPlaneFixture`.
    """
    if config.use_existing_cluster:
        return ExistingClusterFixture(config, crd_paths, logger)
    return ControlPlaneFixture(config, crd_paths, logger)


def _free_port() -> int:
    """Find a localhost TCP port that is currently unused."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((_LOCALHOST, 0))
        return sock.getsockname()[1]
