from __future__ import annotations

import shlex
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class MountSpec(BaseModel):
    host_path: str = Field(..., min_length=1)
    container_path: str = Field(..., min_length=1)
    read_only: bool = False

    @classmethod
    def parse(cls, raw: str) -> "MountSpec":
        """Parse the compose short form ``host:container[:ro|rw]``."""
        parts = raw.split(":")
        if len(parts) == 2:
            return cls(host_path=parts[0], container_path=parts[1])
        if len(parts) == 3 and parts[2] in {"ro", "rw"}:
            return cls(host_path=parts[0], container_path=parts[1], read_only=parts[2] == "ro")
        raise ValueError(f"Invalid volume '{raw}'. Use host:container[:ro|rw].")


class ServiceSpec(BaseModel):
    name: str | None = Field(None, description="Service name; defaults to the mapping key")
    image: str | None = Field(None, description="Docker image (name:tag)")
    command: list[str] = Field(default_factory=list, description="Entrypoint and arguments")
    host: str | None = Field(None, description="Internal host name; defaults to the service name")
    port: int = Field(..., ge=1, le=65535, description="Port the backend listens on (internal network only)")
    depends_on: list[str] = Field(default_factory=list)
    restart: Literal["unless-stopped", "never", "on-failure"] = "never"
    volumes: list[MountSpec] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    health_path: str | None = Field(None, description="Optional liveness endpoint path")

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("volumes", mode="before")
    @classmethod
    def _parse_volumes(cls, v):
        if v is None:
            return []
        return [MountSpec.parse(x) if isinstance(x, str) else x for x in v]

    @field_validator("environment", mode="before")
    @classmethod
    def _parse_environment(cls, v):
        if v is None:
            return {}
        if isinstance(v, list):
            env: dict[str, str] = {}
            for item in v:
                key, sep, value = str(item).partition("=")
                if not sep:
                    raise ValueError(f"Invalid environment entry '{item}'. Use KEY=VALUE.")
                env[key] = value
            return env
        return {str(k): "" if val is None else str(val) for k, val in dict(v).items()}

    @field_validator("health_path")
    @classmethod
    def _check_health_path(cls, v: str | None) -> str | None:
        # Keep it a path (not a full URL) so probes never leave the internal network.
        if v is None:
            return v
        if not v.startswith("/"):
            raise ValueError("health_path must start with '/'.")
        if "://" in v or ".." in v:
            raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")
        return v


class RouteSpec(BaseModel):
    port: int = Field(..., ge=1, le=65535, description="Published port")
    host: str | None = Field(None, description="Exact host, '*.suffix' wildcard, or omitted for any host")
    path: str = Field("/", description="Path prefix")
    target: str
    strip_prefix: bool = False

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("route path must start with '/'.")
        return v


class GatewaySpec(BaseModel):
    tls_ports: list[int] = Field(default_factory=list)
    certfile: str | None = None
    keyfile: str | None = None


class ManifestSpec(BaseModel):
    network: str | None = None
    services: dict[str, ServiceSpec] | list[ServiceSpec]
    routes: list[RouteSpec] = Field(default_factory=list)
    gateway: GatewaySpec = Field(default_factory=GatewaySpec)


class ServiceStatus(BaseModel):
    name: str
    state: str
    pid: int | None = None
    restart_count: int = 0
    last_exit_code: int | None = None
    error: str | None = None
    message: str = ""
    updated_at: str


class StopResponse(BaseModel):
    name: str
    state: str
