import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_int_env(name: str, default: int) -> int:
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _parse_email_list(raw: str | None) -> frozenset[str]:
    """Split a comma separated list of emails into a normalized set."""
    if not raw:
        return frozenset()
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


class Config:
    """Configuration class for the billing service"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    LOG_LEVEL = _get_env_var("LOG_LEVEL", "INFO")

    # Supabase Configuration
    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_KEY = os.environ.get("SUPABASE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")

    # Redis / webhook queue
    REDIS_URL = _get_env_var("REDIS_URL", "redis://localhost:6379/0")
    WEBHOOK_QUEUE_NAME = _get_env_var("WEBHOOK_QUEUE_NAME", "stripe_webhooks")
    WEBHOOK_MAX_RETRIES = _get_int_env("WEBHOOK_MAX_RETRIES", 3)
    WEBHOOK_JOB_TIMEOUT_SECONDS = _get_int_env("WEBHOOK_JOB_TIMEOUT_SECONDS", 300)

    # Reconciliation
    # Secondary duplicate-delivery window, 0 disables it
    RECENT_ALLOCATION_WINDOW_SECONDS = _get_int_env("RECENT_ALLOCATION_WINDOW_SECONDS", 0)
    SUBSCRIPTION_FALLBACK_PERIOD_DAYS = _get_int_env("SUBSCRIPTION_FALLBACK_PERIOD_DAYS", 30)
    # Accounts whose deployments stay published after cancellation
    ADMIN_EMAILS = _parse_email_list(os.environ.get("ADMIN_EMAILS"))

    # Sentry Configuration
    SENTRY_DSN = os.environ.get("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", True)
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key\n"
                "STRIPE_WEBHOOK_SECRET=your_stripe_webhook_signing_secret"
            )

        return True

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Validate that all critical environment variables are set.

        Returns:
            tuple: (is_valid, missing_vars)
        """
        critical_vars = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": cls.STRIPE_WEBHOOK_SECRET,
        }

        missing = [name for name, value in critical_vars.items() if not value]
        return len(missing) == 0, missing
