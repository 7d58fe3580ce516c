"""
Tests for log sanitization of webhook-supplied values
"""

from src.utils.security_validators import sanitize_for_logging


def test_strips_line_breaks():
    assert sanitize_for_logging("user-1\nINFO forged line\r") == "user-1 INFO forged line "


def test_strips_nul_bytes():
    assert sanitize_for_logging("sub_\x001") == "sub_1"


def test_non_strings():
    assert sanitize_for_logging(None) == ""
    assert sanitize_for_logging(400) == "400"
