"""
FastAPI API Server.

HTTP session init for the embeddable widget plus the chat and voice
WebSocket gateways.

Start with:
    uvicorn assistant_gateway.api_server:app --reload --port 3001
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from assistant_gateway.api.dependencies import Services, build_services
from assistant_gateway.api.middleware import RateLimitMiddleware, RequestIdMiddleware
from assistant_gateway.api.websockets import router as sockets_router
from assistant_gateway.api.widget_sessions import router as widget_sessions_router
from assistant_gateway.config import get_settings
from assistant_gateway.errors import AuthError, GatewayError, NotFoundError, UpstreamError, ValidationError
from assistant_gateway.logging_config import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

SERVICE_NAME = "assistant-gateway"
VERSION = "0.1.0"

_STATUS_BY_ERROR: list[tuple[type[GatewayError], int]] = [
    (AuthError, 401),
    (NotFoundError, 404),
    (ValidationError, 400),
    (UpstreamError, 502),
]


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    ``services`` is normally built in the lifespan from settings; tests pass
    a pre-wired container instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup and shutdown lifecycle hooks."""
        logger.info("api_server_starting")
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = build_services(get_settings())
        yield
        if owned:
            await app.state.services.aclose()
        logger.info("api_server_stopping")

    app = FastAPI(
        title="Assistant Gateway API",
        description="Session init, chat and voice signaling for the embeddable AI assistant widget",
        version=VERSION,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Middleware (order matters: outermost first)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # widgets are embedded on arbitrary host pages
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(GatewayError, _gateway_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    # Routers
    app.include_router(widget_sessions_router)
    app.include_router(sockets_router)

    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/", tags=["System"])
    async def root() -> dict[str, str]:
        """API root."""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "docs": "/docs",
        }

    return app


async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("api_error", path=request.url.path, error_code=exc.code, error=exc.message)
    else:
        logger.info("api_rejected", path=request.url.path, error_code=exc.code, status=status)
    return JSONResponse(status_code=status, content={"errorCode": exc.code, "message": exc.message})


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "errorCode": "INVALID_REQUEST",
            "message": "Request payload failed validation",
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    return [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": str(err.get("msg", ""))}
        for err in exc.errors()
    ]


app = create_app()
