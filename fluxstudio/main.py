import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import REGISTRY, generate_latest

from fluxstudio.config import Config
from fluxstudio.config.logging_config import configure_logging
from fluxstudio.utils.exceptions import (
    AccountNotFoundError,
    ConcurrentUpdateError,
    ExternalOperationError,
    InvalidStatusTransitionError,
    OperationDeniedError,
)

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        - Errors: always (parent_sampled)
        - Development: 100%
        - /health and /metrics: never
        - Stripe webhook: 50%
        - Everything else: 10%
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = sampling_context.get("asgi_scope", {}).get("path", "")
        if endpoint in ("/health", "/metrics"):
            return 0.0
        if endpoint == "/api/stripe-webhook":
            return 0.5
        return 0.1

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
        send_default_pii=False,
    )
    logger.info(f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT})")
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from fluxstudio.config.supabase_config import init_db

    try:
        Config.validate()
        init_db()
        logger.info("Database connection verified")
    except RuntimeError as e:
        # Keep serving; /health reports the degraded state
        logger.error(f"Startup database check failed: {e}")
    yield
    logger.info("Shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="FluxStudio API",
        description="Credit-metered AI image editing with Stripe subscriptions",
        version="1.0.0",
        lifespan=lifespan,
    )

    if Config.IS_PRODUCTION:
        allowed_origins = [Config.FRONTEND_URL]
    else:
        allowed_origins = [
            Config.FRONTEND_URL,
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
        ]

    from fluxstudio.middleware.observability_middleware import ObservabilityMiddleware

    app.add_middleware(ObservabilityMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(set(allowed_origins)),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "stripe-signature"],
    )
    logger.info(f"CORS allowed origins: {sorted(set(allowed_origins))}")

    # ==================== Routers ====================
    from fluxstudio.routes import auth, health, images, subscriptions, webhooks

    for router_module in (health, auth, subscriptions, webhooks, images):
        app.include_router(router_module.router)

    # ==================== Prometheus Metrics ====================
    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)
    async def metrics():
        return Response(generate_latest(REGISTRY), media_type="text/plain; charset=utf-8")

    # ==================== Exception Handlers ====================

    @app.exception_handler(OperationDeniedError)
    async def operation_denied_handler(request: Request, exc: OperationDeniedError):
        return JSONResponse(status_code=exc.status_code, content=exc.body)

    @app.exception_handler(AccountNotFoundError)
    async def account_not_found_handler(request: Request, exc: AccountNotFoundError):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=404, content={"detail": "User not found"})

    @app.exception_handler(ConcurrentUpdateError)
    async def concurrent_update_handler(request: Request, exc: ConcurrentUpdateError):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=409,
            content={"detail": "Your account was updated by another request. Please retry."},
        )

    @app.exception_handler(InvalidStatusTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidStatusTransitionError):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ExternalOperationError)
    async def external_operation_handler(request: Request, exc: ExternalOperationError):
        # Provider messages stay in the logs
        logger.error(f"{request.method} {request.url.path}: provider failure: {exc}")
        return JSONResponse(
            status_code=502,
            content={"detail": "An upstream service failed. Please try again."},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
            import sentry_sdk

            sentry_sdk.capture_exception(exc)

        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    logger.info("Application routes and handlers registered")
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting FluxStudio API server...")
    uvicorn.run("fluxstudio.main:app", host="0.0.0.0", port=8000, reload=True)
