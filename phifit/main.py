from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from phifit.config import Settings, settings as default_settings
from phifit.db import Database
from phifit.errors import DomainError
from phifit.logging_setup import configure_logging
from phifit.rate_limit import RateLimiter, build_rate_limiter
from phifit.routes.system import router as system_router
from phifit.routes.auth import router as auth_router
from phifit.routes.competitions import router as competitions_router
from phifit.routes.weeks import router as weeks_router
from phifit.routes.side_challenges import router as side_challenges_router
from phifit.routes.tokens import router as tokens_router
from phifit.routes.leaderboard import router as leaderboard_router
from phifit.routes.cron import router as cron_router
import structlog

configure_logging()
log = structlog.get_logger()


def setup_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        log.info("domain_error", path=request.url.path, status=exc.status_code, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        # a unique/check constraint caught a concurrent duplicate
        log.warning("integrity_error", path=request.url.path, error=str(exc.orig))
        return JSONResponse(status_code=409, content={"detail": "Conflicting change, please retry"})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error("unhandled_exception", path=request.url.path, method=request.method, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Something went wrong, please try again"})


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """
    Build the API. Process resources are constructed here (or injected by
    tests) and released in the lifespan shutdown.
    """
    settings = settings or default_settings
    database = database or Database(settings.database_url, pool_pre_ping=True)
    rate_limiter = rate_limiter or build_rate_limiter(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("startup", env=settings.environment, version=settings.app_version, git_sha=settings.git_sha)
        yield
        await app.state.rate_limiter.close()
        await app.state.db.dispose()
        log.info("shutdown")

    app = FastAPI(
        title=f"{settings.app_display_name} API",
        version=settings.app_version,
        lifespan=lifespan,
        description=f"{settings.app_display_name} API for weekly fitness challenges",
    )
    app.state.settings = settings
    app.state.db = database
    app.state.rate_limiter = rate_limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.environment == "dev" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_error_handlers(app)

    app.include_router(system_router)
    app.include_router(auth_router)
    app.include_router(competitions_router)
    app.include_router(weeks_router)
    app.include_router(side_challenges_router)
    app.include_router(tokens_router)
    app.include_router(leaderboard_router)
    app.include_router(cron_router)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = rid
        structlog.contextvars.bind_contextvars(request_id=rid)
        try:
            response: Response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers["X-Request-ID"] = rid
        return response

    return app


app = create_app()
