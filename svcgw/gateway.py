"""Reverse proxy in front of the backends.

The gateway is the only dual-homed component: an ExternalListener owns a
published port, a BackendConnector talks to backends on the internal
network. Requests and responses are streamed, never buffered whole.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from threading import Thread
from typing import AsyncIterator, Protocol

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .descriptors import DescriptorSet
from .routes import AmbiguousMatch, NoMatch, RouteRule, RouteTable, RoutingError
from .runtime import ProcessState, UnknownService
from .settings import settings


HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class GatewayError(Exception):
    status_code = 502


class BackendUnavailable(GatewayError):
    status_code = 503


class BackendConnectError(GatewayError):
    status_code = 502


class BackendTimeout(GatewayError):
    status_code = 504


class StateSource(Protocol):
    def current_state(self, identity: str) -> ProcessState: ...


def _hop_by_hop(headers: list[tuple[str, str]]) -> set[str]:
    # Headers named in Connection are hop-by-hop as well.
    extra: set[str] = set()
    for k, v in headers:
        if k.lower() == "connection":
            extra.update(t.strip().lower() for t in v.split(",") if t.strip())
    return HOP_BY_HOP_HEADERS | extra


def filter_headers(headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
    drop = _hop_by_hop(headers)
    return [(k, v) for k, v in headers if k.lower() not in drop]


def proxy_request_headers(request: Request) -> list[tuple[str, str]]:
    """Client headers minus hop-by-hop ones, plus X-Forwarded-*."""
    raw = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw]
    headers = [(k, v) for k, v in filter_headers(raw) if not k.lower().startswith("x-forwarded-")]

    client_ip = request.client.host if request.client else None
    prior = request.headers.get("x-forwarded-for")
    forwarded_for = ", ".join(x for x in (prior, client_ip) if x)
    if forwarded_for:
        headers.append(("X-Forwarded-For", forwarded_for))
    host = request.headers.get("host")
    if host:
        headers.append(("X-Forwarded-Host", host))
    headers.append(("X-Forwarded-Proto", request.url.scheme))
    return headers


def _has_body(request: Request) -> bool:
    length = request.headers.get("content-length")
    if length is not None:
        return length.strip() not in {"", "0"}
    return "transfer-encoding" in request.headers


class BackendConnector:
    """Internal-network side of the gateway.

    Only dials endpoints declared in the deployment's descriptor set.
    """

    def __init__(
        self,
        descriptors: DescriptorSet,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._descriptors = descriptors
        self._timeout = httpx.Timeout(settings.gateway_timeout_s if timeout_s is None else timeout_s)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport, follow_redirects=False)
        return self._client

    def url_for(self, target: str, path: str, query: str = "") -> str:
        if target not in self._descriptors:
            raise GatewayError(f"Target '{target}' is not a service of this deployment.")
        url = f"{self._descriptors.get(target).base_url}{path}"
        return f"{url}?{query}" if query else url

    async def send(self, method: str, url: str, headers: list[tuple[str, str]], content: AsyncIterator[bytes] | None) -> httpx.Response:
        client = self.client()
        req = client.build_request(method, url, headers=headers, content=content)
        try:
            return await client.send(req, stream=True)
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"Backend timed out: {url}") from e
        except httpx.TransportError as e:
            raise BackendConnectError(f"Backend unreachable: {url} ({type(e).__name__})") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class Gateway:
    def __init__(self, routes: RouteTable, states: StateSource, connector: BackendConnector):
        self.routes = routes
        self.states = states
        self.connector = connector

    def resolve_route(self, request: Request, port: int | None = None) -> RouteRule:
        return self.routes.resolve(request.headers.get("host"), request.url.path, port)

    def _is_running(self, target: str) -> bool:
        try:
            return self.states.current_state(target) is ProcessState.RUNNING
        except UnknownService:
            return False

    async def forward(self, request: Request, route: RouteRule) -> StreamingResponse:
        """Stream ``request`` to the route's backend and stream the answer back.

        Fails fast with BackendUnavailable when the backend is not Running.
        """
        if not self._is_running(route.target):
            raise BackendUnavailable(f"Service '{route.target}' is not running.")

        url = self.connector.url_for(route.target, route.upstream_path(request.url.path), request.url.query)
        content = request.stream() if _has_body(request) else None
        upstream = await self.connector.send(request.method, url, proxy_request_headers(request), content)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (k.encode("latin-1"), v.encode("latin-1")) for k, v in filter_headers(list(upstream.headers.multi_items()))
        ]
        return response


def create_gateway_app(gateway: Gateway, port: int | None = None) -> FastAPI:
    """HTTP app for one published port."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await gateway.connector.aclose()

    # No docs routes: every path belongs to the backends.
    app = FastAPI(title=f"svcgw gateway :{port}", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)

    @app.exception_handler(RoutingError)
    async def _routing_error(request: Request, exc: RoutingError) -> JSONResponse:
        status = 500 if isinstance(exc, AmbiguousMatch) else 404 if isinstance(exc, NoMatch) else 400
        return JSONResponse({"detail": str(exc)}, status_code=status)

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=exc.status_code)

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, path: str):
        route = gateway.resolve_route(request, port)
        return await gateway.forward(request, route)

    return app


class ExternalListener:
    """Owns one published port. TLS is terminated here when a certificate is given."""

    def __init__(
        self,
        app: FastAPI,
        port: int,
        host: str | None = None,
        certfile: str | None = None,
        keyfile: str | None = None,
        log_level: str = "info",
    ):
        self.port = port
        self.tls = bool(certfile)
        config = uvicorn.Config(
            app,
            host=host or settings.listen_host,
            port=port,
            ssl_certfile=certfile,
            ssl_keyfile=keyfile,
            log_level=log_level,
            # Never trust X-Forwarded-* from external clients.
            proxy_headers=False,
        )
        self.server = uvicorn.Server(config)
        self._thread = Thread(target=self.server.run, name=f"svcgw-listener-{port}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self.server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout)
