import dataclasses
import os
import sys
import itertools
import threading
import time
from collections import defaultdict

import pytest

# Ensure project root is importable (so `import cli` / `import main` work reliably across environments)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from svcgw import db
from svcgw.orchestrator import Backoff, Orchestrator


class FakeHandle:
    """In-memory stand-in for a backend process."""

    _pids = itertools.count(1000)

    def __init__(self, name, honor_sigterm=True):
        self.name = name
        self.pid = next(self._pids)
        self.honor_sigterm = honor_sigterm
        self.exit_code = None
        self.terminated = False
        self.killed = False
        self.closed = False
        self._exited = threading.Event()

    def crash(self, exit_code=1):
        self.exit_code = exit_code
        self._exited.set()

    def wait(self, timeout=None):
        if self._exited.wait(timeout):
            return self.exit_code
        return None

    def terminate(self):
        self.terminated = True
        if self.honor_sigterm:
            self.crash(-15)

    def kill(self):
        self.killed = True
        self.crash(-9)

    def close(self):
        self.closed = True


class FakeLauncher:
    def __init__(self):
        self.handles = defaultdict(list)
        self.launch_order = []
        self.honor_sigterm = True
        self.fail = set()
        self._lock = threading.Lock()

    def launch(self, descriptor):
        from svcgw.launchers import LaunchError

        if descriptor.name in self.fail:
            raise LaunchError(f"cannot start {descriptor.name}")
        handle = FakeHandle(descriptor.name, honor_sigterm=self.honor_sigterm)
        with self._lock:
            self.handles[descriptor.name].append(handle)
            self.launch_order.append(descriptor.name)
        return handle

    def count(self, name):
        with self._lock:
            return len(self.handles[name])

    def last(self, name):
        with self._lock:
            return self.handles[name][-1]


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Point the event journal at a throwaway sqlite file."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "events.db")))
    db.init_db()
    return db


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def make_orchestrator(launcher):
    created = []

    def _make(**overrides):
        opts = dict(
            dependency_timeout_s=2.0,
            startup_timeout_s=1.0,
            grace_period_s=0.2,
            poll_interval_s=0.01,
            backoff=Backoff(base_s=0.01, ceiling_s=0.04),
            health_fail_threshold=2,
            health_timeout_s=0.1,
        )
        opts.update(overrides)
        orch = Orchestrator(launcher, **opts)
        created.append(orch)
        return orch

    yield _make

    for orch in created:
        orch.teardown()


