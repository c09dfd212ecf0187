from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from threading import Condition
from typing import Callable, Iterable


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


class ProcessState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class ErrorKind(str, Enum):
    DEPENDENCY_TIMEOUT = "dependency_timeout"
    PROCESS_FAILURE = "process_failure"
    HEALTH_CHECK = "health_check"
    SPAWN_ERROR = "spawn_error"


ALLOWED_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.PENDING: {ProcessState.STARTING, ProcessState.FAILED, ProcessState.STOPPED},
    ProcessState.STARTING: {ProcessState.RUNNING, ProcessState.FAILED, ProcessState.STOPPED},
    ProcessState.RUNNING: {ProcessState.FAILED, ProcessState.STOPPED},
    ProcessState.FAILED: {ProcessState.STARTING, ProcessState.STOPPED},
    ProcessState.STOPPED: set(),
}


class InvalidTransition(RuntimeError):
    pass


class UnknownService(KeyError):
    pass


@dataclass
class ProcessRecord:
    name: str
    state: ProcessState = ProcessState.PENDING
    pid: int | None = None
    restart_count: int = 0
    last_exit_code: int | None = None
    error: ErrorKind | None = None
    message: str = ""
    updated_at: str = field(default_factory=utc_now)


TransitionListener = Callable[[str, ProcessState, ProcessState, ProcessRecord], None]


class StateTable:
    """Per-service ProcessState, mutated only by the orchestrator.

    Reads take no lock. Writes serialize per service on that service's
    condition, which is also what dependency waits block on.
    """

    def __init__(self, listener: TransitionListener | None = None) -> None:
        self._records: dict[str, ProcessRecord] = {}
        self._conds: dict[str, Condition] = {}
        self._listener = listener

    def register(self, name: str) -> None:
        if name in self._records:
            return
        self._conds[name] = Condition()
        self._records[name] = ProcessRecord(name=name)

    def names(self) -> list[str]:
        return list(self._records)

    def state(self, name: str) -> ProcessState:
        try:
            return self._records[name].state
        except KeyError:
            raise UnknownService(name) from None

    def snapshot(self, name: str) -> ProcessRecord:
        try:
            return replace(self._records[name])
        except KeyError:
            raise UnknownService(name) from None

    def snapshots(self) -> list[ProcessRecord]:
        return [replace(r) for r in list(self._records.values())]

    def transition(self, name: str, new: ProcessState, **changes) -> ProcessRecord:
        """Move ``name`` to ``new``, applying ``changes`` to its record.

        Raises InvalidTransition when the state machine forbids the move.
        """
        cond = self._cond(name)
        with cond:
            rec = self._records[name]
            old = rec.state
            if new not in ALLOWED_TRANSITIONS[old]:
                raise InvalidTransition(f"{name}: {old.value} -> {new.value}")
            rec.state = new
            for k, v in changes.items():
                setattr(rec, k, v)
            rec.updated_at = utc_now()
            if self._listener:
                self._listener(name, old, new, replace(rec))
            cond.notify_all()
            return replace(rec)

    def update(self, name: str, **changes) -> None:
        """Change record fields without a state transition."""
        cond = self._cond(name)
        with cond:
            rec = self._records[name]
            for k, v in changes.items():
                setattr(rec, k, v)
            rec.updated_at = utc_now()

    def wait_for(
        self,
        name: str,
        states: Iterable[ProcessState],
        timeout: float | None,
        cancelled: Callable[[], bool] | None = None,
        slice_s: float = 0.1,
    ) -> bool:
        """Block until ``name`` is in one of ``states``.

        Returns False on timeout or when ``cancelled()`` turns true.
        """
        wanted = set(states)
        cond = self._cond(name)
        deadline = None if timeout is None else time.monotonic() + timeout
        with cond:
            while self._records[name].state not in wanted:
                if cancelled and cancelled():
                    return False
                remaining = slice_s if deadline is None else min(slice_s, deadline - time.monotonic())
                if remaining <= 0:
                    return False
                cond.wait(remaining)
            return True

    def clear(self) -> None:
        self._records.clear()
        self._conds.clear()

    def _cond(self, name: str) -> Condition:
        try:
            return self._conds[name]
        except KeyError:
            raise UnknownService(name) from None
