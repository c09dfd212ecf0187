from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Event, Lock, Thread, current_thread
from typing import Callable, Iterable

from . import db
from .alerts import report_failure
from .descriptors import DescriptorSet, ServiceDescriptor
from .health import check_health
from .launchers import LaunchError, Launcher, ProcessHandle
from .runtime import (
    ErrorKind,
    InvalidTransition,
    ProcessRecord,
    ProcessState,
    StateTable,
    UnknownService,
)
from .settings import settings


HealthChecker = Callable[[str, float], "tuple[bool, str, float | None]"]


@dataclass(frozen=True)
class Backoff:
    """Capped exponential restart delay: base * factor**attempt, at most ceiling."""

    base_s: float = 1.0
    ceiling_s: float = 60.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        attempt = max(0, int(attempt))
        # Past 64 doublings every realistic ceiling has been reached.
        if attempt > 64:
            return self.ceiling_s
        return min(self.ceiling_s, self.base_s * self.factor**attempt)


@dataclass
class _Outcome:
    exit_code: int | None
    error: ErrorKind
    message: str
    # The process is still up and has to be shut down by the supervisor.
    alive: bool = False
    # Restart decision, when the exit was already recorded via on_process_exit().
    restart: bool | None = None


class _Supervisor:
    """Spawns, monitors and restarts exactly one backend."""

    def __init__(self, orch: "Orchestrator", descriptor: ServiceDescriptor):
        self.orch = orch
        self.descriptor = descriptor
        self.stop_event = Event()
        self.exit_event = Event()
        self.reported: _Outcome | None = None
        self.lock = Lock()
        self.handle: ProcessHandle | None = None
        self.delays: list[float] = []
        self.thread = Thread(target=self.run, name=f"svcgw-{descriptor.name}", daemon=True)

    def report_exit(self, outcome: _Outcome) -> None:
        """Hand an exit recorded outside this thread to the monitor loop."""
        with self.lock:
            self.reported = outcome
            self.exit_event.set()

    def run(self) -> None:
        o, d = self.orch, self.descriptor
        try:
            if not o._wait_for_dependencies(d, self.stop_event.is_set):
                if not self.stop_event.is_set():
                    o._fail_dependency(d)
                return

            attempt = 0
            restarts = 0
            while not self.stop_event.is_set():
                changes = {"restart_count": restarts} if restarts else {}
                if not o._transition(d.name, ProcessState.STARTING, message="starting", **changes):
                    return
                outcome = self._run_once()
                if outcome is None or self.stop_event.is_set():
                    return

                if outcome.restart is None:
                    restart = o.on_process_exit(d.name, outcome.exit_code, error=outcome.error, message=outcome.message)
                else:
                    restart = outcome.restart
                if outcome.alive:
                    self._release(shutdown=True)
                if not restart:
                    return

                delay = o.backoff.delay(attempt)
                attempt += 1
                restarts += 1
                self.delays.append(delay)
                db.log_event("INFO", f"Restarting in {delay:.2f}s (restart #{restarts})", service_name=d.name)
                if self.stop_event.wait(delay):
                    return
        except Exception as e:
            db.log_event("ERROR", f"Supervisor crashed: {type(e).__name__}: {e}", service_name=d.name)
            raise

    def _run_once(self) -> _Outcome | None:
        """Launch the backend and block until it fails. None means a stop was requested."""
        o, d = self.orch, self.descriptor
        with self.lock:
            self.reported = None
            self.exit_event.clear()
        try:
            handle = o.launcher.launch(d)
        except LaunchError as e:
            return _Outcome(None, ErrorKind.SPAWN_ERROR, str(e))

        with self.lock:
            if self.stop_event.is_set():
                # stop() ran while we were launching and saw no handle.
                o._shutdown_handle(handle)
                return None
            self.handle = handle

        try:
            outcome = self._monitor(handle)
        except Exception as e:
            # The handle itself broke (e.g. the container was removed behind our back).
            db.log_event("ERROR", f"Lost track of process: {type(e).__name__}: {e}", service_name=d.name)
            outcome = _Outcome(None, ErrorKind.PROCESS_FAILURE, f"lost track of process ({type(e).__name__}: {e})", alive=True)
        if outcome is not None and not outcome.alive:
            self._release(shutdown=False)
        return outcome

    def _take_reported(self) -> _Outcome | None:
        with self.lock:
            outcome, self.reported = self.reported, None
            self.exit_event.clear()
        return outcome

    def _monitor(self, handle: ProcessHandle) -> _Outcome | None:
        o, d = self.orch, self.descriptor
        health_url = f"{d.base_url}{d.health_path}" if d.health_path else None

        if health_url:
            deadline = time.monotonic() + o.startup_timeout_s
            while True:
                code = handle.wait(o.poll_interval_s)
                if self.stop_event.is_set():
                    return None
                if self.exit_event.is_set():
                    return self._take_reported()
                if code is not None:
                    return _Outcome(code, ErrorKind.PROCESS_FAILURE, f"exited with code {code} during startup")
                ok, msg, _ = o.health_checker(health_url, o.health_timeout_s)
                if ok:
                    break
                if time.monotonic() >= deadline:
                    return _Outcome(
                        None, ErrorKind.HEALTH_CHECK, f"not healthy after {o.startup_timeout_s}s ({msg})", alive=True
                    )

        if not o._transition(d.name, ProcessState.RUNNING, pid=handle.pid, error=None, message="running"):
            return None

        fails = 0
        while True:
            code = handle.wait(o.poll_interval_s)
            if self.stop_event.is_set():
                return None
            if self.exit_event.is_set():
                return self._take_reported()
            if code is not None:
                return _Outcome(code, ErrorKind.PROCESS_FAILURE, f"exited with code {code}")
            if not health_url:
                continue
            ok, msg, _ = o.health_checker(health_url, o.health_timeout_s)
            if ok:
                fails = 0
                continue
            fails += 1
            db.log_event("WARN", f"Health check failed ({fails}/{o.health_fail_threshold}): {msg}", service_name=d.name)
            if fails >= o.health_fail_threshold:
                return _Outcome(None, ErrorKind.HEALTH_CHECK, f"{fails} failed health checks ({msg})", alive=True)

    def _release(self, shutdown: bool) -> None:
        with self.lock:
            handle = self.handle
            if handle is None or self.stop_event.is_set():
                # stop() owns the handle now.
                return
            self.handle = None
        if not shutdown:
            handle.close()
            return
        try:
            self.orch._shutdown_handle(handle)
        except Exception as e:
            db.log_event(
                "WARN",
                f"Could not shut down pid={handle.pid}: {type(e).__name__}: {e}",
                service_name=self.descriptor.name,
            )


class Orchestrator:
    """Brings backends up in dependency order and keeps them running.

    One supervisor thread per service; services coordinate only through
    the shared StateTable.
    """

    def __init__(
        self,
        launcher: Launcher,
        *,
        dependency_timeout_s: float | None = None,
        startup_timeout_s: float | None = None,
        grace_period_s: float | None = None,
        poll_interval_s: float | None = None,
        backoff: Backoff | None = None,
        health_fail_threshold: int | None = None,
        health_timeout_s: float | None = None,
        health_checker: HealthChecker = check_health,
    ):
        self.launcher = launcher
        self.dependency_timeout_s = settings.dependency_timeout_s if dependency_timeout_s is None else dependency_timeout_s
        self.startup_timeout_s = settings.startup_timeout_s if startup_timeout_s is None else startup_timeout_s
        self.grace_period_s = settings.grace_period_s if grace_period_s is None else grace_period_s
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self.backoff = backoff or Backoff(settings.backoff_base_s, settings.backoff_ceiling_s)
        self.health_fail_threshold = max(1, settings.health_fail_threshold if health_fail_threshold is None else health_fail_threshold)
        self.health_timeout_s = settings.health_timeout_s if health_timeout_s is None else health_timeout_s
        self.health_checker = health_checker

        self.states = StateTable(listener=self._journal_transition)
        self._descriptors: DescriptorSet | None = None
        self._supervisors: dict[str, _Supervisor] = {}

    @property
    def descriptors(self) -> DescriptorSet | None:
        return self._descriptors

    def start(self, descriptors: DescriptorSet) -> None:
        """Register every service as Pending and start its supervisor.

        Returns immediately; each supervisor waits for its own dependencies.
        """
        if self._descriptors is not None:
            raise RuntimeError("Orchestrator already started.")
        self._descriptors = descriptors
        order = list(descriptors.topological_order())
        for d in order:
            self.states.register(d.name)
            self._supervisors[d.name] = _Supervisor(self, d)
        db.log_event("INFO", f"Starting deployment: {', '.join(d.name for d in order)}")
        for d in order:
            self._supervisors[d.name].thread.start()

    def current_state(self, identity: str) -> ProcessState:
        return self.states.state(identity)

    def status(self) -> list[ProcessRecord]:
        return self.states.snapshots()

    def restart_delays(self, identity: str) -> list[float]:
        return list(self._supervisor(identity).delays)

    def wait_for_state(self, identity: str, states: Iterable[ProcessState], timeout: float | None = None) -> bool:
        return self.states.wait_for(identity, states, timeout)

    def on_process_exit(
        self,
        identity: str,
        exit_code: int | None,
        *,
        error: ErrorKind = ErrorKind.PROCESS_FAILURE,
        message: str = "",
    ) -> bool:
        """Mark ``identity`` Failed and decide whether it is restarted.

        Returns True when the restart policy schedules a restart. A service
        that is Stopped is left alone. Called from outside the supervisor,
        the exit is handed to the supervisor, which shuts the old process
        down and restarts it after the backoff delay.
        """
        message = message or f"exited with code {exit_code}"
        current = self.states.state(identity)
        if current is ProcessState.STOPPED:
            return False
        fields = {"last_exit_code": exit_code, "error": error, "message": message, "pid": None}
        if current is ProcessState.FAILED:
            self.states.update(identity, **fields)
        elif not self._transition(identity, ProcessState.FAILED, **fields):
            return False

        policy = self._descriptor(identity).restart
        restart = policy.should_restart(exit_code)
        if not restart:
            report_failure(identity, f"{message}; restart policy '{policy.value}'")

        sup = self._supervisors.get(identity)
        if sup is not None and current_thread() is not sup.thread:
            sup.report_exit(_Outcome(exit_code, error, message, alive=True, restart=restart))
        return restart

    def stop(self, identity: str, grace_period_s: float | None = None) -> None:
        """Stop one service: terminate, wait for the grace period, then kill.

        Dependents are not stopped.
        """
        sup = self._supervisor(identity)
        grace = self.grace_period_s if grace_period_s is None else grace_period_s
        sup.stop_event.set()
        if self.states.state(identity) is not ProcessState.STOPPED:
            self._transition(identity, ProcessState.STOPPED, pid=None, message="stopped")

        with sup.lock:
            handle, sup.handle = sup.handle, None
        if handle is not None:
            self._shutdown_handle(handle, grace)
        if sup.thread.is_alive():
            sup.thread.join(timeout=grace + self.poll_interval_s + 1.0)

    def teardown(self) -> None:
        """Stop everything, dependents first, then discard all state."""
        if self._descriptors is None:
            return
        for d in reversed(list(self._descriptors.topological_order())):
            self.stop(d.name)
        db.log_event("INFO", "Deployment torn down")
        self.states.clear()
        self._supervisors.clear()
        self._descriptors = None

    def _supervisor(self, identity: str) -> _Supervisor:
        try:
            return self._supervisors[identity]
        except KeyError:
            raise UnknownService(identity) from None

    def _descriptor(self, identity: str) -> ServiceDescriptor:
        if self._descriptors is None or identity not in self._descriptors:
            raise UnknownService(identity)
        return self._descriptors.get(identity)

    def _transition(self, identity: str, new: ProcessState, **changes) -> bool:
        """Apply a transition; False when the service was stopped concurrently."""
        try:
            self.states.transition(identity, new, **changes)
            return True
        except InvalidTransition:
            if self.states.state(identity) is ProcessState.STOPPED:
                return False
            raise

    def _wait_for_dependencies(self, d: ServiceDescriptor, cancelled: Callable[[], bool]) -> bool:
        deadline = time.monotonic() + self.dependency_timeout_s
        while True:
            pending = [dep for dep in d.depends_on if self.states.state(dep) is not ProcessState.RUNNING]
            if not pending:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0 or cancelled():
                return False
            self.states.wait_for(
                pending[0],
                {ProcessState.RUNNING},
                remaining,
                cancelled=cancelled,
                slice_s=min(0.1, self.poll_interval_s),
            )

    def _fail_dependency(self, d: ServiceDescriptor) -> None:
        waiting = [dep for dep in d.depends_on if self.states.state(dep) is not ProcessState.RUNNING]
        message = f"dependencies not running after {self.dependency_timeout_s}s: {', '.join(waiting)}"
        if self._transition(d.name, ProcessState.FAILED, error=ErrorKind.DEPENDENCY_TIMEOUT, message=message):
            report_failure(d.name, message)

    def _shutdown_handle(self, handle: ProcessHandle, grace_period_s: float | None = None) -> None:
        grace = self.grace_period_s if grace_period_s is None else grace_period_s
        handle.terminate()
        if handle.wait(grace) is None:
            db.log_event("WARN", f"Process pid={handle.pid} ignored SIGTERM for {grace}s; killing")
            handle.kill()
            handle.wait(grace)
        handle.close()

    def _journal_transition(self, name: str, old: ProcessState, new: ProcessState, rec: ProcessRecord) -> None:
        level = "ERROR" if new is ProcessState.FAILED else "INFO"
        detail = f": {rec.message}" if rec.message else ""
        db.log_event(level, f"{old.value} -> {new.value}{detail}", service_name=name)
