import logging

from fastapi import FastAPI

from src.config import Config
from src.config.logging_config import configure_logging
from src.config.redis_config import is_redis_available

configure_logging()
logger = logging.getLogger(__name__)

_config_ok, _missing_vars = Config.validate_critical_env_vars()
if not _config_ok:
    logger.warning(f"Missing critical environment variables: {', '.join(_missing_vars)}")

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        Sampling strategy:
        - Errors: always sampled (parent_sampled)
        - Development: 100%
        - Health endpoint: 0%
        - Stripe webhook: 100% (low volume, financially significant)
        - Everything else: SENTRY_TRACES_SAMPLE_RATE
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint == "/health":
            return 0.0

        if endpoint == "/api/stripe/webhook":
            return 1.0

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.APP_VERSION,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(f"✅ Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT})")
else:
    logger.info("⏭️  Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Shipper Billing API",
        description="Credit ledger and subscription reconciliation driven by Stripe webhooks",
        version=Config.APP_VERSION,
    )

    from src.routes.payments import router as payments_router

    app.include_router(payments_router)

    @app.get("/health", tags=["System"])
    async def health():
        redis_ok = is_redis_available()
        return {
            "status": "healthy" if redis_ok else "degraded",
            "queue": "available" if redis_ok else "unavailable",
            "environment": Config.APP_ENV,
        }

    logger.info(f"Billing API ready (environment: {Config.APP_ENV})")
    return app


app = create_app()
