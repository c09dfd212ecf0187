import sys

import pytest
from docker.errors import APIError, NotFound

from svcgw.descriptors import Mount, ServiceDescriptor
from svcgw.launchers import ContainerHandle, DockerLauncher, LaunchError, SubprocessLauncher, build_launcher


def test_subprocess_launcher_runs_and_terminates():
    d = ServiceDescriptor(
        name="sleeper",
        host="127.0.0.1",
        port=9,
        command=(sys.executable, "-c", "import time; time.sleep(30)"),
    )
    handle = SubprocessLauncher().launch(d)
    try:
        assert handle.pid
        assert handle.wait(0.05) is None
        handle.terminate()
        assert handle.wait(5) == -15
    finally:
        handle.kill()
        handle.close()


def test_subprocess_launcher_passes_environment():
    d = ServiceDescriptor(
        name="env",
        host="127.0.0.1",
        port=9,
        command=(sys.executable, "-c", "import os, sys; sys.exit(0 if os.environ['RUST_LOG'] == 'info' else 3)"),
        environment={"RUST_LOG": "info"},
    )
    handle = SubprocessLauncher().launch(d)
    assert handle.wait(10) == 0


def test_launchers_reject_incomplete_descriptors():
    d = ServiceDescriptor(name="bare", host="bare", port=1)
    with pytest.raises(LaunchError):
        SubprocessLauncher().launch(d)
    with pytest.raises(LaunchError):
        DockerLauncher(network="svcgw", client=object()).launch(d)
    with pytest.raises(LaunchError):
        SubprocessLauncher().launch(
            ServiceDescriptor(name="missing", host="missing", port=1, command=("/nonexistent/binary",))
        )


class _Container:
    def __init__(self, kill_error=None, wait_error=None):
        self.kill_error = kill_error
        self.wait_error = wait_error
        self.signals = []
        self.attrs = {"State": {"Pid": 4242}}

    def reload(self):
        pass

    def kill(self, signal=None):
        if self.kill_error:
            raise self.kill_error
        self.signals.append(signal)

    def wait(self, timeout=None):
        if self.wait_error:
            raise self.wait_error
        return {"StatusCode": 0}


def test_container_handle_signals():
    c = _Container()
    handle = ContainerHandle(c)
    assert handle.pid == 4242
    handle.terminate()
    handle.kill()
    assert c.signals == ["SIGTERM", "SIGKILL"]


def test_container_handle_ignores_not_running_conflict():
    class _Resp:
        status_code = 409

    ContainerHandle(_Container(kill_error=APIError("not running", response=_Resp()))).terminate()

    class _Resp500:
        status_code = 500

    with pytest.raises(APIError):
        ContainerHandle(_Container(kill_error=APIError("boom", response=_Resp500()))).kill()


def test_container_handle_wait_treats_removed_container_as_exit():
    assert ContainerHandle(_Container()).wait(1) == 0
    assert ContainerHandle(_Container(wait_error=NotFound("No such container"))).wait(1) == -1

    class _Resp500:
        status_code = 500

    assert ContainerHandle(_Container(wait_error=APIError("daemon hiccup", response=_Resp500()))).wait(1) == -1


class _Containers:
    def __init__(self):
        self.runs = []

    def get(self, name):
        raise NotFound(f"No such container: {name}")

    def run(self, image, **kwargs):
        self.runs.append((image, kwargs))
        return _Container()


class _Networks:
    def __init__(self):
        self.created = []

    def get(self, name):
        raise NotFound(f"network {name} not found")

    def create(self, name, **kwargs):
        self.created.append((name, kwargs))


class _DockerClient:
    def __init__(self):
        self.containers = _Containers()
        self.networks = _Networks()


def test_docker_launcher_keeps_backends_on_the_internal_network():
    client = _DockerClient()
    d = ServiceDescriptor(
        name="http-api",
        host="http-api",
        port=8777,
        image="gcr.io/radicle-services/http-api:latest",
        mounts=(Mount("/var/opt/radicle", "/app/radicle", True), Mount("/srv/cache", "/cache", False)),
        environment={"RUST_LOG": "info"},
    )

    handle = DockerLauncher(network="radicle-services", client=client).launch(d)

    assert handle.pid == 4242
    assert client.networks.created == [("radicle-services", {"driver": "bridge", "internal": True})]
    image, kwargs = client.containers.runs[0]
    assert image == "gcr.io/radicle-services/http-api:latest"
    assert kwargs["name"] == "http-api"
    assert kwargs["network"] == "radicle-services"
    assert kwargs["detach"] is True
    assert kwargs["init"] is True
    assert kwargs["restart_policy"] == {"Name": "no"}
    assert kwargs["environment"] == {"RUST_LOG": "info"}
    assert kwargs["volumes"] == {
        "/var/opt/radicle": {"bind": "/app/radicle", "mode": "ro"},
        "/srv/cache": {"bind": "/cache", "mode": "rw"},
    }
    assert "ports" not in kwargs


def test_build_launcher():
    assert isinstance(build_launcher("subprocess", "net"), SubprocessLauncher)
    docker_launcher = build_launcher("docker", "radicle-services", internal=False)
    assert isinstance(docker_launcher, DockerLauncher)
    assert docker_launcher.network == "radicle-services"
    with pytest.raises(ValueError):
        build_launcher("k8s", "net")
