"""Deployment manifest loading.

A manifest declares the backend services, the route rules of the gateway,
and the gateway's TLS listeners. Environment references (``$VAR``,
``${VAR}``, ``${VAR:-default}``) in route hosts and mount host paths are
substituted at load time.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .api_models import ManifestSpec
from .descriptors import (
    DescriptorSet,
    InvalidConfig,
    MissingEnvironment,
    descriptor_from_spec,
    parse_specs,
)
from .routes import RouteRule, RouteTable


_ENV_REF_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")


def substitute_env(value: str, environ: Mapping[str, str] | None = None, allow_empty: bool = True) -> str:
    """Expand environment references, failing on unset variables without a default.

    With ``allow_empty=False`` a variable that is set but empty fails too.
    """
    env = os.environ if environ is None else environ

    def _expand(m: re.Match[str]) -> str:
        name = m.group("braced") or m.group("bare")
        if name in env and env[name] != "":
            return env[name]
        if m.group("default") is not None:
            return m.group("default")
        if name in env:
            if not allow_empty:
                raise MissingEnvironment(name, empty=True)
            return env[name]
        raise MissingEnvironment(name)

    return _ENV_REF_RE.sub(_expand, value.replace("$$", "\0")).replace("\0", "$")


@dataclass(frozen=True)
class TlsConfig:
    ports: tuple[int, ...] = ()
    certfile: str | None = None
    keyfile: str | None = None

    def enabled_for(self, port: int) -> bool:
        return port in self.ports and bool(self.certfile)


@dataclass(frozen=True)
class Deployment:
    descriptors: DescriptorSet
    routes: RouteTable
    network: str | None = None
    tls: TlsConfig = field(default_factory=TlsConfig)


def load_deployment(raw: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> Deployment:
    """Validate a parsed manifest and build the descriptor set and route table."""
    if not isinstance(raw, Mapping):
        raise InvalidConfig("Manifest must be a mapping.")
    try:
        spec = ManifestSpec.model_validate(dict(raw))
    except ValidationError as e:
        raise InvalidConfig(f"Invalid manifest: {e}") from e

    descriptors = []
    for name, svc in parse_specs(spec.services):
        for m in svc.volumes:
            m.host_path = substitute_env(m.host_path, environ)
        descriptors.append(descriptor_from_spec(name, svc))
    descriptor_set = DescriptorSet(descriptors)

    rules = []
    for r in spec.routes:
        if r.target not in descriptor_set:
            raise InvalidConfig(f"Route on port {r.port} targets unknown service '{r.target}'.")
        # An empty host would widen the rule to every host.
        host = substitute_env(r.host, environ, allow_empty=False) if r.host else None
        rules.append(RouteRule(target=r.target, port=r.port, host=host, path_prefix=r.path, strip_prefix=r.strip_prefix))
    routes = RouteTable(rules)

    tls = TlsConfig(
        ports=tuple(spec.gateway.tls_ports),
        certfile=substitute_env(spec.gateway.certfile, environ) if spec.gateway.certfile else None,
        keyfile=substitute_env(spec.gateway.keyfile, environ) if spec.gateway.keyfile else None,
    )
    if tls.ports and not tls.certfile:
        raise InvalidConfig("gateway.tls_ports requires gateway.certfile.")

    return Deployment(descriptors=descriptor_set, routes=routes, network=spec.network, tls=tls)


def load_manifest(path: str, environ: Mapping[str, str] | None = None) -> Deployment:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise InvalidConfig(f"Cannot read manifest '{path}': {e}") from e
    except yaml.YAMLError as e:
        raise InvalidConfig(f"Manifest '{path}' is not valid YAML: {e}") from e
    return load_deployment(raw or {}, environ)
