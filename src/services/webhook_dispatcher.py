"""
Durable dispatch of Stripe webhook events (Redis/RQ).

The webhook route verifies and records each delivery, then hands the event to
an RQ queue. A worker runs process_stripe_event; an exception from the engine
fails the job and RQ retries it, so a transition interrupted by a gateway or
database error runs again from the start.
"""

import logging
from typing import Any

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

from src.config.config import Config
from src.config.logging_config import stripe_event_context
from src.config.redis_config import get_redis_client
from src.config.supabase_config import get_supabase_client
from src.db.webhook_events import mark_event_attempt, mark_event_failed, mark_event_processed
from src.schemas.payments import TransitionResult
from src.services.reconciliation import ReconciliationEngine
from src.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

PROCESS_JOB_PATH = "src.services.webhook_dispatcher.process_stripe_event"
RETRY_INTERVALS = [10, 30, 60]
JOB_RESULT_TTL = 86400
PENDING_JOB_STATUSES = frozenset(
    {JobStatus.QUEUED, JobStatus.STARTED, JobStatus.SCHEDULED, JobStatus.DEFERRED}
)


def get_redis_connection() -> Redis:
    """Redis connection used by RQ (raw bytes, no response decoding)."""
    return get_redis_client()


def get_webhook_queue(connection: Redis | None = None) -> Queue:
    """Return the configured Stripe webhook queue."""
    return Queue(
        name=Config.WEBHOOK_QUEUE_NAME,
        connection=connection or get_redis_connection(),
        default_timeout=Config.WEBHOOK_JOB_TIMEOUT_SECONDS,
    )


def event_user_id(event: dict[str, Any]) -> str | None:
    """metadata.userId of the event's object, when the event carries one."""
    data_object = (event.get("data") or {}).get("object") or {}
    metadata = data_object.get("metadata") or {}
    return metadata.get("userId")


def enqueue_stripe_event(event: dict[str, Any], queue: Queue | None = None) -> Job:
    """
    Enqueue a verified Stripe event with retry/timeouts for durability

    The job id is derived from the Stripe event id. RQ does not deduplicate
    on it, so a redelivery whose job is still pending gets the existing job
    back. A finished or failed job is queued again; the ledger's idempotency
    keys turn an already-applied transition into a skip.
    """
    queue = queue or get_webhook_queue()
    job_id = f"stripe:{event['id']}"

    try:
        existing = Job.fetch(job_id, connection=queue.connection)
    except NoSuchJobError:
        existing = None
    if existing is not None and existing.get_status() in PENDING_JOB_STATUSES:
        logger.info(f"Stripe event {event['id']} already has a pending job; not queueing again")
        return existing

    return queue.enqueue(
        PROCESS_JOB_PATH,
        event,
        job_id=job_id,
        retry=Retry(max=Config.WEBHOOK_MAX_RETRIES, interval=RETRY_INTERVALS),
        job_timeout=Config.WEBHOOK_JOB_TIMEOUT_SECONDS,
        result_ttl=JOB_RESULT_TTL,
        failure_ttl=JOB_RESULT_TTL,
    )


def process_stripe_event(
    event: dict[str, Any], engine: ReconciliationEngine | None = None
) -> dict[str, Any]:
    """
    Worker job: reconcile one Stripe event against the credit ledger

    Returns:
        The TransitionResult as a dict (stored by RQ as the job result)

    Raises:
        Whatever the engine raised, after recording the failure, so RQ retries
    """
    event_id = event.get("id")
    event_type = event.get("type")
    payload = (event.get("data") or {}).get("object") or {}

    with stripe_event_context(event_id, event_type):
        attempt = mark_event_attempt(event_id)
        logger.info(f"Processing Stripe event {event_id} ({event_type}), attempt {attempt}")

        engine = engine or ReconciliationEngine.from_config(get_supabase_client())

        try:
            result: TransitionResult = engine.dispatch(event_type, payload)
        except Exception as e:
            logger.error(
                f"Stripe event {event_id} ({event_type}) failed on attempt {attempt}: {e}",
                exc_info=True,
            )
            mark_event_failed(event_id, f"{type(e).__name__}: {e}")
            capture_payment_error(
                e,
                operation=event_type or "webhook",
                user_id=event_user_id(event),
                details={"event_id": event_id, "attempt": attempt},
            )
            raise

        mark_event_processed(event_id, user_id=result.user_id)
        logger.info(
            f"Stripe event {event_id} ({event_type}) -> {result.transition} "
            f"{result.status.value}: {result.message}"
        )
        return result.model_dump(mode="json")
