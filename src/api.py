from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import parse_qsl
import asyncio
import hmac
import logging

from config import Settings, settings as default_settings, VERSION
from errors import ErrorKind, GatewayError
from gateway import RequestGateway, StreamKind, parse_stream_request, effective_user_agent
from health import HealthProbe, StatusFlag
from resilient_client import ProxyTypes, ResilientClient, build_client
from tunnel_broker import setup_tunnel

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
NO_CACHE = "no-cache, no-store"
# Alternate path form: /playlist/<id>.m3u8?<query>, with the '?' percent-encoded
# by the client so the query arrives inside the path
ALTERNATE_PATH_MARKER = ".m3u8"


@dataclass
class GatewayContext:
    """Everything a request handler needs, built once at startup"""
    settings: Settings
    client: ResilientClient
    status: StatusFlag
    proxy: Optional[ProxyTypes] = None

    @property
    def gateway(self) -> RequestGateway:
        return RequestGateway(self.client, self.settings)

    def probe(self) -> HealthProbe:
        return HealthProbe(self.settings, self.status, proxy=self.proxy)


async def resolve_proxy(settings: Settings) -> Optional[ProxyTypes]:
    """Static proxy from settings, otherwise negotiate one with the tunnel broker"""
    if settings.PROXY:
        logger.info("Using statically configured proxy")
        return settings.PROXY
    return await setup_tunnel(settings)


async def build_context(settings: Settings) -> GatewayContext:
    proxy = await resolve_proxy(settings)
    client = build_client(settings, proxy)
    logger.info(f"Outbound requests use {client.describe()}")
    return GatewayContext(settings=settings, client=client, status=StatusFlag(), proxy=proxy)


class AdmissionMiddleware:
    """
    Last-resort safety net around every request: at most `max_concurrent`
    requests in flight, excess rejected immediately with 503, and each
    admitted request bounded by `timeout` seconds (504 on expiry).
    """

    def __init__(self, app, max_concurrent: int = 64, timeout: float = 40.0):
        self.app = app
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.in_flight = 0

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if self.in_flight >= self.max_concurrent:
            logger.warning(f"Shedding request to {scope.get('path')}: {self.in_flight} in flight")
            await self._send_error(GatewayError.overloaded(), scope, receive, send)
            return

        response_started = False

        async def tracking_send(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        self.in_flight += 1
        try:
            await asyncio.wait_for(self.app(scope, receive, tracking_send), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Request to {scope.get('path')} timed out after {self.timeout}s")
            if not response_started:
                await self._send_error(GatewayError.timeout(), scope, receive, send)
        finally:
            self.in_flight -= 1

    @staticmethod
    async def _send_error(error: GatewayError, scope, receive, send):
        response = JSONResponse(status_code=error.status_code, content=error.to_dict())
        await response(scope, receive, send)


def split_alternate_path(rest: str) -> Tuple[str, List[Tuple[str, str]]]:
    """'<id>.m3u8?a=1&b=2' -> ('<id>', [('a', '1'), ('b', '2')])"""
    stream_id, marker, remainder = rest.partition(ALTERNATE_PATH_MARKER)
    if not marker:
        raise GatewayError.bad_request("Playlist path must contain '.m3u8'")
    if remainder.startswith("?"):
        remainder = remainder[1:]
    return stream_id, parse_qsl(remainder, keep_blank_values=True)


def get_context(request: Request) -> GatewayContext:
    return request.app.state.context


async def serve_manifest(request: Request, kind: StreamKind, raw_id: str,
                         params: Optional[List[Tuple[str, str]]] = None) -> Response:
    context = get_context(request)
    if params is None:
        params = list(request.query_params.multi_items())
    user_agent = effective_user_agent(request.headers.get("user-agent"), context.settings)
    stream_request = parse_stream_request(kind, raw_id, params, user_agent)
    manifest = await context.gateway.process(stream_request)
    return Response(content=manifest, media_type=MANIFEST_MEDIA_TYPE)


def create_app(settings: Settings = default_settings,
               context: Optional[GatewayContext] = None) -> FastAPI:
    """Build the app. Optional features are wired here from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events"""
        # Startup
        logger.info("⚡️ ttv gateway starting up...")
        owns_context = getattr(app.state, "context", None) is None
        if owns_context:
            # Broker failures propagate and abort startup
            app.state.context = await build_context(settings)

        yield

        # Shutdown
        logger.info("ttv gateway shutting down...")
        if owns_context:
            await app.state.context.client.aclose()

    app = FastAPI(
        title="ttv gateway",
        version=VERSION,
        description="Playback gateway that fetches manifests through an ad-free region",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.context = context

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path}: {exc.message}")
        else:
            logger.info(f"{request.url.path}: {exc.status_code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/live/{channel}")
    async def get_live(request: Request, channel: str):
        return await serve_manifest(request, StreamKind.LIVE, channel)

    @app.get("/vod/{vod_id}")
    async def get_vod(request: Request, vod_id: str):
        return await serve_manifest(request, StreamKind.VOD, vod_id)

    @app.get("/status")
    async def get_status(request: Request):
        online = get_context(request).status.get()
        status_code = 200 if online or not settings.deep_status_enabled else 503
        return JSONResponse(status_code=status_code, content={"online": online})

    if settings.deep_status_enabled:
        @app.get("/truestat/{secret}")
        async def deep_status(request: Request, secret: str):
            if not hmac.compare_digest(secret.encode(), settings.DEEP_STATUS_SECRET.encode()):
                raise GatewayError(ErrorKind.FORBIDDEN, 403, "Forbidden")
            online = await get_context(request).probe().deep_status()
            return JSONResponse(status_code=200 if online else 503, content={"online": online})

    if settings.ALTERNATE_PATHS:
        # Registered before the live form so "vod/" isn't read as a channel
        @app.get("/playlist/vod/{rest:path}")
        async def get_vod_alternate(request: Request, rest: str):
            vod_id, params = split_alternate_path(rest)
            return await serve_manifest(request, StreamKind.VOD, vod_id, params)

        @app.get("/playlist/{rest:path}")
        async def get_live_alternate(request: Request, rest: str):
            channel, params = split_alternate_path(rest)
            return await serve_manifest(request, StreamKind.LIVE, channel, params)

    # Middleware added last runs first: CORS and cache headers wrap shed/timeout responses too
    app.add_middleware(
        AdmissionMiddleware,
        max_concurrent=settings.MAX_CONCURRENT_REQUESTS,
        timeout=settings.REQUEST_TIMEOUT,
    )
    if settings.ENABLE_GZIP:
        app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def no_cache_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Cache-Control"] = NO_CACHE
        return response

    # Manifests hold no secrets once issued, so any origin may fetch them
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
    )

    return app


app = create_app()
