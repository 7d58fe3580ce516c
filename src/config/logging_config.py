"""
Logging configuration for the billing API and the webhook worker.

Features:
- Structured JSON logging outside development
- Stripe event correlation: every record emitted while a webhook is being
  reconciled carries the event id and type
- Environment-aware log level
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from src.config.config import Config

logger = logging.getLogger(__name__)

_current_stripe_event: ContextVar[tuple[str | None, str | None]] = ContextVar(
    "current_stripe_event", default=(None, None)
)


@contextmanager
def stripe_event_context(event_id: str | None, event_type: str | None):
    """
    Bind a Stripe event to every log record emitted inside the block.

    Example:
        with stripe_event_context(event["id"], event["type"]):
            engine.dispatch(event["type"], event["data"]["object"])
    """
    token = _current_stripe_event.set((event_id, event_type))
    try:
        yield
    finally:
        _current_stripe_event.reset(token)


class WebhookContextFilter(logging.Filter):
    """
    Logging filter that adds the Stripe event being processed to log records.

    Allows every ledger mutation log line to be traced back to the webhook
    delivery that caused it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        event_id, event_type = _current_stripe_event.get()
        if event_id:
            record.stripe_event_id = event_id
        if event_type:
            record.stripe_event_type = event_type
        return True


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Formats log records as JSON with webhook context and additional metadata.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "stripe_event_id"):
            log_data["stripe_event_id"] = record.stripe_event_id
        if hasattr(record, "stripe_event_type"):
            log_data["stripe_event_type"] = record.stripe_event_type

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra"):
            log_data.update(record.extra)

        return json.dumps(log_data, default=str)


def configure_logging() -> None:
    """
    Configure application logging.

    Sets up:
    - Console handler (plain text in development, JSON elsewhere)
    - Webhook context filter for event correlation
    - Quieter levels for chatty HTTP and queue libraries
    """
    level = getattr(logging, (Config.LOG_LEVEL or "INFO").upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    # Filters on the handler see records from every logger, not just root
    console_handler.addFilter(WebhookContextFilter())

    if Config.IS_DEVELOPMENT:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    logger.info("Console logging configured")

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("rq").setLevel(logging.WARNING)
