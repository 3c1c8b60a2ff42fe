from chatgate.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_token_and_email_fields():
    event = _redact_pii(
        None,
        "info",
        {"event": "x", "access_token": "abcdefghij", "email": "alice@example.com", "name": "alice"},
    )
    assert event["access_token"] == "ab***ij"
    assert event["email"].startswith("al***")
    assert event["name"] == "alice"


def test_error_code_is_not_redacted():
    event = _redact_pii(None, "warning", {"error_code": "exchange_failed"})
    assert event["error_code"] == "exchange_failed"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-123")
    assert get_correlation_id() == cid == "req-123"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-123"


def test_sanitize_strips_paths_and_credentials():
    cleaned = sanitize_error_message("open /srv/chatgate/state/x.json failed password=hunter2")
    assert "/srv/chatgate" not in cleaned
    assert "hunter2" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
