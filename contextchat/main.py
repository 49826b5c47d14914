"""FastAPI application entry point for the context-aware chat backend."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contextchat.api.routes.chat import router as chat_router
from contextchat.api.routes.rollup import router as rollup_router
from contextchat.api.routes.translate import router as translate_router
from contextchat.config import Settings, get_settings
from contextchat.core.container import Services, build_services
from contextchat.core.tasks import drain_background
from contextchat.errors import ChatServiceError, UpstreamProviderError

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built service handles (tests inject these). When None,
            they are built from settings at startup.
        settings: Configuration; defaults to the process-wide settings.
    """
    settings = settings or (services.settings if services else get_settings())
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(settings)
            logger.info(f"Services ready (env={settings.APP_ENV})")

        yield

        # Let post-stream persistence finish before the process exits
        await drain_background()
        if owned:
            await app.state.services.aclose()

    app = FastAPI(
        title="Context Chat API",
        description="Context-aware chat with persistent memory and rolling summaries",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id"],
    )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    app.include_router(chat_router)
    app.include_router(rollup_router)
    app.include_router(translate_router)

    @app.exception_handler(ChatServiceError)
    async def chat_service_exception_handler(request: Request, exc: ChatServiceError):
        content = {"error": exc.message}
        if isinstance(exc, UpstreamProviderError):
            logger.error(f"Upstream failure {exc.status} from {exc.url}: {exc.body[:500]}")
            content["upstream_status"] = exc.status
        elif exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{location}: {message}" if location else message},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions without leaking internal details."""
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"}
        )

    return app


app = create_app()
