"""Run a deployment: supervise the backends and serve the gateway.

    python main.py [deployment.yml]

Configuration comes from SVCGW_* environment variables (see svcgw/settings.py).
"""
from __future__ import annotations

import logging
import signal
import sys
import threading

import uvicorn

from svcgw import db
from svcgw.control import create_control_app
from svcgw.descriptors import ConfigError
from svcgw.gateway import BackendConnector, ExternalListener, Gateway, create_gateway_app
from svcgw.launchers import DockerLauncher, build_launcher
from svcgw.manifest import Deployment, load_manifest
from svcgw.orchestrator import Orchestrator
from svcgw.settings import settings


def setup_logging(level: str = settings.log_level) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(process)d %(name)s %(message)s",
    )


def build_listeners(deployment: Deployment, orchestrator: Orchestrator) -> list[ExternalListener]:
    """One listener per published port, each with its own backend connector."""
    listeners = []
    for port in deployment.routes.ports:
        gateway = Gateway(deployment.routes, orchestrator, BackendConnector(deployment.descriptors))
        tls = deployment.tls.enabled_for(port)
        listeners.append(
            ExternalListener(
                create_gateway_app(gateway, port),
                port,
                certfile=deployment.tls.certfile if tls else None,
                keyfile=deployment.tls.keyfile if tls else None,
                log_level=settings.log_level.lower(),
            )
        )
    return listeners


def run(manifest_path: str | None = None) -> int:
    setup_logging()
    db.init_db()

    path = manifest_path or settings.manifest_path
    try:
        deployment = load_manifest(path)
    except ConfigError as e:
        db.log_event("ERROR", f"Deployment aborted: {e}")
        return 2

    for volume, users in deployment.descriptors.shared_volumes().items():
        db.log_event("INFO", f"Shared volume {volume} mounted by {', '.join(users)}")

    launcher = build_launcher(settings.launcher, deployment.network or settings.docker_network, settings.docker_internal_network)
    if isinstance(launcher, DockerLauncher) and not launcher.available():
        db.log_event("ERROR", "Docker is not available. Start the docker daemon and try again.")
        return 2
    orchestrator = Orchestrator(launcher)

    control = uvicorn.Server(
        uvicorn.Config(
            create_control_app(orchestrator),
            host=settings.control_host,
            port=settings.control_port,
            log_level=settings.log_level.lower(),
        )
    )
    control_thread = threading.Thread(target=control.run, name="svcgw-control", daemon=True)
    listeners = build_listeners(deployment, orchestrator)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    orchestrator.start(deployment.descriptors)
    try:
        control_thread.start()
        for listener in listeners:
            listener.start()
            db.log_event("INFO", f"Gateway listening on :{listener.port}{' (tls)' if listener.tls else ''}")
        while not stop.wait(1.0):
            pass
        db.log_event("INFO", "Shutdown requested")
    finally:
        for listener in listeners:
            listener.stop()
        control.should_exit = True
        orchestrator.teardown()
    return 0


if __name__ == "__main__":
    raise SystemExit(run(sys.argv[1] if len(sys.argv) > 1 else None))
