from __future__ import annotations

from pyfleetsync._redact import redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    headers = {
        "apikey": "anon-key",
        "Authorization": "Bearer user-jwt",
        "accept": "application/json",
        "nested": {"access_token": "jwt", "refresh_token": "rt", "driver_id": "D1"},
    }

    redacted = redact_for_log(headers)
    assert redacted["apikey"] == "<redacted>"
    assert redacted["Authorization"] == "<redacted>"
    assert redacted["accept"] == "application/json"
    assert redacted["nested"]["access_token"] == "<redacted>"
    assert redacted["nested"]["refresh_token"] == "<redacted>"
    assert redacted["nested"]["driver_id"] == "D1"


def test_redact_for_log_masks_bearer_values_under_any_key() -> None:
    assert redact_for_log(["Bearer abc.def"]) == ["Bearer <redacted>"]


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]
