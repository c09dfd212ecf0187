from __future__ import annotations

from dataclasses import dataclass

from .descriptors import ConfigError


class RoutingError(Exception):
    """Per-request routing failure."""


class NoMatch(RoutingError):
    pass


class AmbiguousMatch(RoutingError):
    pass


class AmbiguousRoute(ConfigError):
    def __init__(self, a: "RouteRule", b: "RouteRule"):
        super().__init__(f"Routes {a.describe()} and {b.describe()} are equally specific and overlap.")
        self.rules = (a, b)


def normalize_host(host: str | None) -> str | None:
    """Lowercase a host and drop any ``:port`` suffix (IPv6 literals kept intact)."""
    if not host:
        return None
    host = host.strip().lower()
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".") or None


def normalize_prefix(prefix: str) -> str:
    if prefix != "/" and prefix.endswith("/"):
        prefix = prefix.rstrip("/") or "/"
    return prefix


@dataclass(frozen=True)
class RouteRule:
    target: str
    port: int
    host: str | None = None
    path_prefix: str = "/"
    strip_prefix: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "host", normalize_host(self.host) if self.host not in (None, "*") else None)
        object.__setattr__(self, "path_prefix", normalize_prefix(self.path_prefix))

    def describe(self) -> str:
        return f"[:{self.port} {self.host or '*'}{self.path_prefix} -> {self.target}]"

    @property
    def specificity(self) -> tuple[int, int, int]:
        """Sort key, higher is more specific: path prefix length, then host kind, then host depth."""
        if self.host is None:
            kind, depth = 0, 0
        elif self.host.startswith("*."):
            kind, depth = 1, self.host.count(".")
        else:
            kind, depth = 2, self.host.count(".")
        return len(self.path_prefix), kind, depth

    def matches_host(self, host: str | None) -> bool:
        if self.host is None:
            return True
        if host is None:
            return False
        if self.host.startswith("*."):
            suffix = self.host[1:]
            return host.endswith(suffix) and len(host) > len(suffix)
        return host == self.host

    def matches_path(self, path: str) -> bool:
        if self.path_prefix == "/":
            return True
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")

    def matches(self, host: str | None, path: str) -> bool:
        return self.matches_host(host) and self.matches_path(path)

    def upstream_path(self, path: str) -> str:
        if not self.strip_prefix or self.path_prefix == "/":
            return path
        rest = path[len(self.path_prefix):]
        return rest if rest.startswith("/") else "/" + rest


class RouteTable:
    """Read-only route rules, validated at load time."""

    def __init__(self, rules: list[RouteRule]):
        self._by_port: dict[int, list[RouteRule]] = {}
        for r in rules:
            self._by_port.setdefault(r.port, []).append(r)

        for port, port_rules in self._by_port.items():
            seen: dict[tuple[str | None, str], RouteRule] = {}
            for r in port_rules:
                # Equal specificity and an overlapping match means same host pattern and same prefix.
                key = (r.host, r.path_prefix)
                if key in seen:
                    raise AmbiguousRoute(seen[key], r)
                seen[key] = r
            port_rules.sort(key=lambda r: r.specificity, reverse=True)

    def __iter__(self):
        for rules in self._by_port.values():
            yield from rules

    def __len__(self) -> int:
        return sum(len(rules) for rules in self._by_port.values())

    @property
    def ports(self) -> list[int]:
        return sorted(self._by_port)

    def targets(self) -> set[str]:
        return {r.target for r in self}

    def resolve(self, host: str | None, path: str, port: int | None = None) -> RouteRule:
        """Return the most specific rule matching (host, path) on ``port``.

        ``port=None`` considers every published port.
        """
        host = normalize_host(host)
        if port is None:
            candidates = [r for rules in self._by_port.values() for r in rules]
            candidates.sort(key=lambda r: r.specificity, reverse=True)
        else:
            candidates = self._by_port.get(port, [])

        matched = [r for r in candidates if r.matches(host, path)]
        if not matched:
            raise NoMatch(f"No route for host={host or '-'} path={path} port={port}")
        best = matched[0]
        if len(matched) > 1 and matched[1].specificity == best.specificity:
            raise AmbiguousMatch(f"Ambiguous routes: {best.describe()} and {matched[1].describe()}")
        return best
