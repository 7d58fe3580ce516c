"""
Logging hygiene helpers for values that arrive in Stripe payloads.
"""


def sanitize_for_logging(value) -> str:
    """Strip newlines and NUL bytes so metadata from webhooks cannot forge log lines.

    Args:
        value: Any value (None is rendered as an empty string)

    Returns:
        Single-line string safe to interpolate into a log message
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")
