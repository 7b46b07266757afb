from __future__ import annotations

from pycloudsync._redact import mask_token, redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "access_token": "eyJhbGciOi",
        "refresh_token": "eyJhbGciOj",
        "expires_in": 300,
        "password": "pw",
        "headers": {"Authorization": "Bearer abc", "accept": "application/json"},
        "nested": [{"id_token": "x"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["access_token"] == "<redacted>"
    assert redacted["refresh_token"] == "<redacted>"
    assert redacted["expires_in"] == 300
    assert redacted["password"] == "<redacted>"
    assert redacted["headers"]["Authorization"] == "<redacted>"
    assert redacted["headers"]["accept"] == "application/json"
    assert redacted["nested"][0]["id_token"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_summarises_bytes() -> None:
    assert redact_for_log(b"\x00" * 16) == "<bytes:16b>"


def test_mask_token() -> None:
    assert mask_token(None) == "<none>"
    assert mask_token("short") == "<redacted>"
    assert mask_token("abcdefghijklmnop") == "abcd…mnop"
