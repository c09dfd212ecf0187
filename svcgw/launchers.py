from __future__ import annotations

import os
import signal
import subprocess
from typing import Protocol

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .db import log_event
from .descriptors import ServiceDescriptor


class LaunchError(RuntimeError):
    pass


class ProcessHandle(Protocol):
    pid: int | None

    def wait(self, timeout: float | None = None) -> int | None:
        """Exit code, or None if still running after ``timeout`` seconds."""

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def close(self) -> None: ...


class Launcher(Protocol):
    def launch(self, descriptor: ServiceDescriptor) -> ProcessHandle: ...


class ContainerHandle:
    def __init__(self, container) -> None:
        self._container = container
        self.pid: int | None = None
        try:
            container.reload()
            self.pid = container.attrs.get("State", {}).get("Pid") or None
        except NotFound:
            pass

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            result = self._container.wait(timeout=timeout)
            return int(result.get("StatusCode", -1))
        except NotFound:
            # Removed behind our back.
            return -1
        except APIError as e:
            log_event("WARN", f"Lost container while waiting: {e}")
            return -1
        except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError):
            # Timed out waiting; double check the container did not exit meanwhile.
            try:
                self._container.reload()
            except NotFound:
                return -1
            state = self._container.attrs.get("State", {})
            if self._container.status in {"exited", "dead"}:
                return int(state.get("ExitCode", -1))
            return None

    def terminate(self) -> None:
        self._signal("SIGTERM")

    def kill(self) -> None:
        self._signal("SIGKILL")

    def close(self) -> None:
        try:
            self._container.remove(force=True)
        except NotFound:
            return

    def _signal(self, sig: str) -> None:
        try:
            self._container.kill(signal=sig)
        except NotFound:
            return
        except APIError as e:
            # 409: container is not running any more.
            if e.status_code == 409:
                return
            raise


class DockerLauncher:
    """Run each backend as a container on the internal network.

    The container is named after the descriptor's host so it is addressable
    by that name on the network. Nothing is published on the host.
    """

    def __init__(self, network: str, internal: bool = True, client: docker.DockerClient | None = None):
        self.network = network
        self.internal = internal
        self._client_obj = client

    def _client(self) -> docker.DockerClient:
        if self._client_obj is None:
            self._client_obj = docker.from_env()
        return self._client_obj

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge", internal=self.internal)
            log_event("INFO", f"Created docker network '{self.network}' (internal={self.internal}).")

    def launch(self, descriptor: ServiceDescriptor) -> ContainerHandle:
        if not descriptor.image:
            raise LaunchError(f"Service '{descriptor.name}' has no image.")
        try:
            self.ensure_network()
            c = self._client()
            self._remove_stale(descriptor.host)
            container = c.containers.run(
                descriptor.image,
                command=list(descriptor.command) or None,
                detach=True,
                name=descriptor.host,
                environment=dict(descriptor.environment),
                network=self.network,
                volumes={
                    m.host_path: {"bind": m.container_path, "mode": "ro" if m.read_only else "rw"}
                    for m in descriptor.mounts
                },
                labels={"svcgw.service": descriptor.name},
                init=True,
                # Restarts are the orchestrator's job; keep Docker's policy off.
                restart_policy={"Name": "no"},
            )
        except ImageNotFound as e:
            raise LaunchError(f"Image '{descriptor.image}' not found: {e}") from e
        except DockerException as e:
            raise LaunchError(f"Docker failed to start '{descriptor.name}': {e}") from e

        log_event("INFO", f"Started container {descriptor.host} from image {descriptor.image}", service_name=descriptor.name)
        return ContainerHandle(container)

    def _remove_stale(self, name: str) -> None:
        try:
            self._client().containers.get(name).remove(force=True)
        except NotFound:
            return


class PopenHandle:
    def __init__(self, proc: subprocess.Popen) -> None:
        self._proc = proc
        self.pid: int | None = proc.pid

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self._proc.wait(timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    def close(self) -> None:
        for stream in (self._proc.stdout, self._proc.stderr):
            if stream:
                stream.close()

    def _signal(self, sig: int) -> None:
        if self._proc.poll() is not None:
            return
        try:
            # Each backend runs in its own session; signal the whole group.
            os.killpg(os.getpgid(self._proc.pid), sig)
        except ProcessLookupError:
            return


class SubprocessLauncher:
    """Run each backend as a local child process (development mode)."""

    def __init__(self, cwd: str | None = None):
        self.cwd = cwd

    def launch(self, descriptor: ServiceDescriptor) -> PopenHandle:
        if not descriptor.command:
            raise LaunchError(f"Service '{descriptor.name}' has no command.")
        env = {**os.environ, **descriptor.environment}
        try:
            proc = subprocess.Popen(list(descriptor.command), env=env, cwd=self.cwd, start_new_session=True)
        except OSError as e:
            raise LaunchError(f"Cannot start '{descriptor.name}': {e}") from e
        log_event("INFO", f"Started process pid={proc.pid}: {' '.join(descriptor.command)}", service_name=descriptor.name)
        return PopenHandle(proc)


def build_launcher(kind: str, network: str, internal: bool = True) -> Launcher:
    if kind == "docker":
        return DockerLauncher(network=network, internal=internal)
    if kind == "subprocess":
        return SubprocessLauncher()
    raise ValueError(f"Unknown launcher '{kind}'. Use 'docker' or 'subprocess'.")
