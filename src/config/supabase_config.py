import logging
import time

from supabase import Client, create_client
from supabase.client import ClientOptions

from src.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client, creating it on first use.

    Initialization failures are cached for ERROR_CACHE_TTL seconds so a broken
    configuration does not hammer Supabase on every webhook.
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    if _last_error is not None:
        time_since_error = time.time() - _last_error_time
        if time_since_error < ERROR_CACHE_TTL:
            retry_in = int(ERROR_CACHE_TTL - time_since_error)
            raise RuntimeError(
                f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
            ) from _last_error
        logger.info("Error cache expired, retrying Supabase initialization...")
        _last_error = None
        _last_error_time = 0

    try:
        Config.validate()

        if not Config.SUPABASE_URL.startswith(("http://", "https://")):
            raise RuntimeError(
                f"SUPABASE_URL must start with 'http://' or 'https://'. "
                f"Current value: '{Config.SUPABASE_URL}'"
            )

        masked_url = (
            Config.SUPABASE_URL[:30] + "..." if len(Config.SUPABASE_URL) > 30 else Config.SUPABASE_URL
        )
        logger.info(f"Initializing Supabase client with URL: {masked_url}")

        _supabase_client = create_client(
            supabase_url=Config.SUPABASE_URL,
            supabase_key=Config.SUPABASE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=45,
                schema="public",
                headers={"X-Client-Info": "shipper-billing/1.0"},
            ),
        )
        return _supabase_client

    except Exception as e:
        _last_error = e
        _last_error_time = time.time()

        logger.error(
            f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
            exc_info=True,
        )

        from src.utils.sentry_context import capture_error

        capture_error(
            e,
            context_type="supabase_config",
            context_data={
                "supabase_url_set": bool(Config.SUPABASE_URL),
                "supabase_key_set": bool(Config.SUPABASE_KEY),
            },
            tags={"component": "supabase_client"},
        )

        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh connection pool.

    Returns:
        bool: True if a cached client was discarded
    """
    global _supabase_client, _last_error, _last_error_time

    had_client = _supabase_client is not None
    _supabase_client = None
    _last_error = None
    _last_error_time = 0
    if had_client:
        logger.info("Supabase client reset - next request will create fresh connection")
    return had_client


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    These errors typically occur after a server-side connection reset or when a
    stale keepalive connection is reused.
    """
    error_str = str(error).lower()
    error_type = type(error).__name__

    if "protocolerror" in error_type.lower():
        return True

    http2_error_indicators = [
        "streaminputs.send_headers",
        "streaminputs.recv_data",
        "connectioninputs.recv_data",
        "connectionstate.closed",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
        "http2 error",
    ]
    if any(indicator in error_str for indicator in http2_error_indicators):
        return True

    if "invalid input" in error_str and ("state" in error_str or "inputs" in error_str):
        return True

    return False


def execute_with_retry(
    operation,
    max_retries: int = 2,
    retry_delay: float = 0.1,
    operation_name: str = "database operation",
):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: A callable that accepts a Supabase client and performs the query.
        max_retries: Maximum number of retry attempts (default: 2)
        retry_delay: Seconds to wait before retrying (default: 0.1)
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Raises:
        Exception: The last error when it is not retryable or retries are exhausted

    Example:
        def insert_event(client):
            return client.table("stripe_webhook_events").insert(data).execute()

        result = execute_with_retry(insert_event, operation_name="record_webhook_event")
    """
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            last_error = e

            if is_http2_protocol_error(e) and attempt < max_retries:
                logger.warning(
                    f"HTTP/2 protocol error in {operation_name} "
                    f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
                )
                reset_supabase_client()
                time.sleep(retry_delay)
                continue
            raise

    raise last_error if last_error else RuntimeError(f"{operation_name} failed with no error captured")
