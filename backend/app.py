from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
from contextlib import asynccontextmanager
from typing import Optional
from dotenv import load_dotenv
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Load environment
load_dotenv()

# Import settings (after dotenv loads)
import settings

from db import get_engine, get_session_factory, init_database, set_global_engine
from exceptions import (
    NotFoundError,
    PromptVaultError,
    ProviderUnavailable,
    UnauthorizedAccess,
    ValidationFailure,
)
from agent.provider_gateway import HttpProviderGateway, ProviderGateway
from services.response_cache import ResponseCache
from services.safety_filter import SafetyFilter
from services.secret_store import SecretStore
from services.session_manager import SessionSweeper
from api.rate_limit import limiter
from api.routes_ai_chat import router as ai_chat_router
from api.routes_ai_admin import router as ai_admin_router

logger = logging.getLogger(__name__)


def create_app(
    engine=None,
    secret_store: Optional[SecretStore] = None,
    gateway: Optional[ProviderGateway] = None,
    cache: Optional[ResponseCache] = None,
    safety: Optional[SafetyFilter] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the API app.

    Collaborators not passed in are built from settings during startup.
    Startup fails with EncryptionKeyMissing when no prompt key is configured.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        if configure_logging:
            settings.configure_logging()

        # Refuse to start without a usable key
        app.state.secret_store = secret_store or SecretStore.from_settings()

        # Initialize database
        db_engine = engine or get_engine(settings.INTERNAL_DB_PATH)
        init_database(db_engine)
        set_global_engine(db_engine)
        app.state.engine = db_engine

        app.state.cache = cache or ResponseCache.from_settings()
        await app.state.cache.start()

        app.state.gateway = gateway or HttpProviderGateway()
        app.state.safety = safety or SafetyFilter(allowed_domains=settings.SAFETY_ALLOWED_DOMAINS)

        app.state.session_sweeper = SessionSweeper(get_session_factory(db_engine))
        await app.state.session_sweeper.start()

        logger.info(f"{settings.SERVICE_NAME} {settings.SERVICE_VERSION} started")

        yield

        try:
            await app.state.session_sweeper.stop()
        except Exception as e:
            logger.error(f"Error stopping session sweeper: {e}", exc_info=True)

        try:
            await app.state.cache.stop()
        except Exception as e:
            logger.error(f"Error stopping response cache: {e}", exc_info=True)

        try:
            await app.state.gateway.aclose()
        except Exception as e:
            logger.error(f"Error closing provider gateway: {e}", exc_info=True)

        logger.info("Application shutdown")

    app = FastAPI(title="promptvault", version=settings.SERVICE_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # Must be False when using wildcard
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses"""
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = response.headers.get("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)

    # Chat routes are limited per agent_id
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.include_router(ai_chat_router)
    app.include_router(ai_admin_router)

    @app.get("/api/health")
    async def health(request: Request):
        cache_state = request.app.state.cache
        return {
            "status": "healthy",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "cache": "healthy" if cache_state.is_healthy() else "degraded",
        }

    return app


def register_exception_handlers(app: FastAPI):
    """
    Map the error taxonomy to status codes.

    Bodies carry fixed or pre-sanitized messages only, never a trace.
    """

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnauthorizedAccess)
    async def unauthorized_handler(request: Request, exc: UnauthorizedAccess):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(ProviderUnavailable)
    async def provider_handler(request: Request, exc: ProviderUnavailable):
        return JSONResponse(status_code=503, content={"detail": "AI provider unavailable, please retry later"})

    @app.exception_handler(ValidationFailure)
    async def validation_failure_handler(request: Request, exc: ValidationFailure):
        return JSONResponse(status_code=422, content={"detail": "Invalid AI response", "errors": exc.errors})

    @app.exception_handler(PromptVaultError)
    async def core_error_handler(request: Request, exc: PromptVaultError):
        # DecryptionFailure, EncryptionKeyMissing, ...
        logger.error(f"Core error on {request.url.path}: {type(exc).__name__}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Field locations and messages only; input values may hold secrets
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {type(exc).__name__}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app = create_app()


def main():
    import uvicorn
    uvicorn.run(
        app,
        host=settings.get_env("PV_APP_HOST", "APP_HOST", "0.0.0.0"),
        port=int(settings.get_env("PV_APP_PORT", "APP_PORT", "8081"))
    )


if __name__ == "__main__":
    main()
