from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from fleethub.config import DEFAULT_IDENTITY_SIGNING_KEY, get_settings
from fleethub.logger import configure_logging, get_logger
from fleethub.metrics import observe_http_request
from fleethub.routes import events, join_clusters, secrets, system
from fleethub.runtime import HubRuntime

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("app.startup", "Starting hub", env=settings.app_env, version=settings.app_version)
    if settings.hub_identity_signing_key == DEFAULT_IDENTITY_SIGNING_KEY:
        logger.warning(
            "security.defaults",
            "FLEETHUB_HUB_IDENTITY_SIGNING_KEY is using a default placeholder; set a unique secret before production",
        )
    runtime = HubRuntime(settings)
    app.state.runtime = runtime
    await runtime.start()
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("app.shutdown", "Shutting down hub")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = None
    if request.client:
        client = request.client.host

    start = perf_counter()
    with logger.context(request_id=request_id):
        logger.info(
            "request.start",
            "Started",
            method=request.method,
            path=request.url.path,
            client=client,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (perf_counter() - start) * 1000
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration = perf_counter() - start
        route = request.scope.get("route")
        observe_http_request(
            method=request.method,
            path=getattr(route, "path", request.url.path),
            status=response.status_code,
            duration_seconds=duration,
        )
        logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(join_clusters.router)
app.include_router(secrets.router)
app.include_router(events.router)
