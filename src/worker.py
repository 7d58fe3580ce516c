"""
RQ worker for the Stripe webhook queue.

Run with:
    python -m src.worker
"""

import logging

from rq import Worker

from src.config import Config
from src.config.logging_config import configure_logging
from src.services.webhook_dispatcher import get_redis_connection, get_webhook_queue

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    if not (Config.SENTRY_ENABLED and Config.SENTRY_DSN):
        logger.info("⏭️  Sentry disabled for worker (SENTRY_ENABLED=false or SENTRY_DSN not set)")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.rq import RqIntegration

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.APP_VERSION,
        traces_sample_rate=Config.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[RqIntegration()],
    )
    logger.info(f"✅ Sentry initialized for worker (environment: {Config.SENTRY_ENVIRONMENT})")
    return True


def main() -> None:
    configure_logging()
    Config.validate()
    init_sentry()

    connection = get_redis_connection()
    queue = get_webhook_queue(connection)
    logger.info(f"Starting webhook worker on queue {queue.name}")

    Worker([queue], connection=connection).work(with_scheduler=True)


if __name__ == "__main__":
    main()
