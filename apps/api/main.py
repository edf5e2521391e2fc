"""
FastAPI application entry point.

``create_app`` builds every long-lived handle (settings, engine and session
factory, clock, scorer, cadence policy, Stripe service) once and stores it on
``app.state``; request handlers get them through ``core.dependencies``.
"""
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
import logging
import time

from core.clock import Clock, SystemClock
from core.config import Settings, settings as default_settings
from core.database import build_engine, build_session_factory, check_db_connection
from core.exceptions import APIException
from core.logging import setup_logging
from routers import billing, checkins, estimates, profile
from services.scheduler import CadencePolicy
from services.scoring import BaselineScorer, Scorer
from services.stripe_service import StripeService, build_stripe_service

logger = logging.getLogger(__name__)


def _filter_sensitive_data(event):
    """Filter sensitive data before sending to Sentry."""
    # Remove Authorization headers
    if "request" in event and "headers" in event["request"]:
        headers = event["request"]["headers"]
        if isinstance(headers, dict):
            headers.pop("authorization", None)
            headers.pop("Authorization", None)
            headers.pop("stripe-signature", None)
            headers.pop("cookie", None)
    return event


def _init_sentry(settings: Settings) -> None:
    if not settings.SENTRY_DSN:
        return
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        # Don't send PII
        send_default_pii=False,
        before_send=lambda event, hint: _filter_sensitive_data(event),
    )
    logger.info(f"Sentry initialized for environment: {settings.ENVIRONMENT}")


def _cors_origins(settings: Settings):
    # Production: set CORS_ORIGINS env var (comma-separated)
    # Development: DEBUG=True allows all origins
    if settings.DEBUG:
        return ["*"]
    if settings.CORS_ORIGINS:
        return [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    return [settings.WEB_APP_BASE_URL.rstrip("/")]


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    clock: Optional[Clock] = None,
    scorer: Optional[Scorer] = None,
    stripe_service: Optional[StripeService] = None,
) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings)
    _init_sentry(settings)

    app = FastAPI(
        title="Cadence API",
        description="Entitlements, weekly check-in cadence and scoring",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    if session_factory is None:
        engine = build_engine(settings)
        session_factory = build_session_factory(engine)
    app.state.settings = settings
    app.state.engine = session_factory.kw.get("bind")
    app.state.session_factory = session_factory
    app.state.clock = clock or SystemClock()
    app.state.scorer = scorer or BaselineScorer()
    app.state.policy = CadencePolicy.from_settings(settings)
    app.state.stripe_service = stripe_service if stripe_service is not None else build_stripe_service(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information."""
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    "extra_fields": {
                        "method": request.method,
                        "path": request.url.path,
                        "error": str(e),
                    }
                }
            )
            raise

        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "process_time_ms": round(process_time * 1000, 2),
                }
            }
        )
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_code": exc.error_code},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Schema violations are form errors, never retried automatically.
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_errors(exc), "error_code": "INVALID_PAYLOAD"},
        )

    # Error handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                }
            }
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check for load balancers and uptime monitors.

        Returns:
            - 200: Core systems operational
            - 503: Database unavailable
        """
        if not check_db_connection(request.app.state.engine):
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "database": "unavailable",
                }
            )
        return {
            "status": "healthy",
            "timestamp": time.time(),
        }

    @app.get("/ping")
    async def ping():
        """
        Minimal ping endpoint for uptime monitors.
        No dependencies checked - just confirms the API is responding.
        """
        return {"pong": True}

    app.include_router(profile.router)
    app.include_router(checkins.router)
    app.include_router(estimates.router)
    app.include_router(billing.router)

    return app


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
