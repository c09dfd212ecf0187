from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping

from pydantic import ValidationError

from .api_models import ServiceSpec


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


class ConfigError(Exception):
    """Load-time configuration problem. Aborts the deployment before any process starts."""


class InvalidConfig(ConfigError):
    pass


class DuplicateService(ConfigError):
    def __init__(self, name: str):
        super().__init__(f"Service '{name}' is declared more than once.")
        self.name = name


class UnknownDependency(ConfigError):
    def __init__(self, service: str, dependency: str):
        super().__init__(f"Service '{service}' depends on unknown service '{dependency}'.")
        self.service = service
        self.dependency = dependency


class CyclicDependency(ConfigError):
    def __init__(self, cycle: list[str]):
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class MissingEnvironment(ConfigError):
    def __init__(self, name: str, empty: bool = False):
        super().__init__(f"Required environment variable '{name}' is {'empty' if empty else 'not set'}.")
        self.name = name


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise InvalidConfig(
            f"Invalid service name '{name}'. Use lowercase letters/numbers and hyphen, "
            "starting with a letter (max 63 chars)."
        )


class RestartPolicy(str, Enum):
    UNLESS_STOPPED = "unless-stopped"
    NEVER = "never"
    ON_FAILURE = "on-failure"

    def should_restart(self, exit_code: int | None) -> bool:
        """Whether a process that exited with ``exit_code`` is restarted.

        ``None`` means the process never ran or was killed by the monitor,
        which counts as a failure.
        """
        if self is RestartPolicy.UNLESS_STOPPED:
            return True
        if self is RestartPolicy.ON_FAILURE:
            return exit_code != 0
        return False


@dataclass(frozen=True)
class Mount:
    host_path: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    host: str
    port: int
    depends_on: tuple[str, ...] = ()
    restart: RestartPolicy = RestartPolicy.NEVER
    mounts: tuple[Mount, ...] = ()
    image: str | None = None
    command: tuple[str, ...] = ()
    environment: dict[str, str] = field(default_factory=dict, hash=False)
    health_path: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        """HTTP base URL usable from within the internal network."""
        return f"http://{self.host}:{int(self.port)}"


class DescriptorSet:
    """Read-only, validated table of service descriptors."""

    def __init__(self, descriptors: list[ServiceDescriptor]):
        self._by_name: dict[str, ServiceDescriptor] = {}
        for d in descriptors:
            validate_service_name(d.name)
            if d.name in self._by_name:
                raise DuplicateService(d.name)
            self._by_name[d.name] = d

        for d in descriptors:
            for dep in d.depends_on:
                if dep not in self._by_name:
                    raise UnknownDependency(d.name, dep)

        cycle = self._find_cycle()
        if cycle:
            raise CyclicDependency(cycle)

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def names(self) -> list[str]:
        return list(self._by_name)

    def get(self, name: str) -> ServiceDescriptor:
        return self._by_name[name]

    def dependents(self, name: str) -> list[str]:
        return [d.name for d in self if name in d.depends_on]

    def shared_volumes(self) -> dict[str, list[str]]:
        """Host paths mounted by more than one service -> mounting services."""
        by_path: dict[str, list[str]] = {}
        for d in self:
            for m in d.mounts:
                users = by_path.setdefault(m.host_path, [])
                if d.name not in users:
                    users.append(d.name)
        return {p: users for p, users in by_path.items() if len(users) > 1}

    def topological_order(self) -> Iterator[ServiceDescriptor]:
        """Yield descriptors so that each one follows all of its dependencies.

        Ties are broken by declaration order. Every call returns a fresh
        generator; nothing is cached or mutated.
        """
        emitted: set[str] = set()
        remaining = list(self._by_name.values())
        while remaining:
            for i, d in enumerate(remaining):
                if all(dep in emitted for dep in d.depends_on):
                    break
            else:
                # Unreachable for a validated set.
                raise CyclicDependency([d.name for d in remaining])
            emitted.add(d.name)
            del remaining[i]
            yield d

    def _find_cycle(self) -> list[str] | None:
        # Iterative DFS; returns the cycle path with the first node repeated at the end.
        white, grey, black = 0, 1, 2
        color = {name: white for name in self._by_name}
        for root in self._by_name:
            if color[root] != white:
                continue
            stack: list[tuple[str, Iterator[str]]] = [(root, iter(self._by_name[root].depends_on))]
            path = [root]
            color[root] = grey
            while stack:
                node, deps = stack[-1]
                nxt = next(deps, None)
                if nxt is None:
                    color[node] = black
                    stack.pop()
                    path.pop()
                    continue
                if color[nxt] == grey:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == white:
                    color[nxt] = grey
                    stack.append((nxt, iter(self._by_name[nxt].depends_on)))
                    path.append(nxt)
        return None


def descriptor_from_spec(name: str, spec: ServiceSpec) -> ServiceDescriptor:
    return ServiceDescriptor(
        name=name,
        host=spec.host or name,
        port=spec.port,
        depends_on=tuple(spec.depends_on),
        restart=RestartPolicy(spec.restart),
        mounts=tuple(Mount(m.host_path, m.container_path, m.read_only) for m in spec.volumes),
        image=spec.image,
        command=tuple(spec.command),
        environment=dict(spec.environment),
        health_path=spec.health_path,
    )


def parse_specs(raw: Mapping[str, Any] | list[Any]) -> list[tuple[str, ServiceSpec]]:
    """Validate raw service entries, keeping declaration order."""
    entries: list[tuple[str | None, Any]]
    if isinstance(raw, Mapping):
        entries = list(raw.items())
    elif isinstance(raw, list):
        entries = [(None, item) for item in raw]
    else:
        raise InvalidConfig("services must be a mapping or a list.")

    out: list[tuple[str, ServiceSpec]] = []
    for key, item in entries:
        try:
            spec = item if isinstance(item, ServiceSpec) else ServiceSpec.model_validate(item or {})
        except ValidationError as e:
            raise InvalidConfig(f"Invalid service '{key or '?'}': {e}") from e
        name = spec.name or key
        if not name:
            raise InvalidConfig("Every service needs a name.")
        out.append((name, spec))
    return out


def load(raw: Mapping[str, Any] | list[Any]) -> DescriptorSet:
    """Build a validated DescriptorSet from raw service declarations.

    Raises a ConfigError subclass naming the offending services.
    """
    return DescriptorSet([descriptor_from_spec(name, spec) for name, spec in parse_specs(raw)])
