from gatekeep.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    redact_value,
    set_correlation_id,
)


def test_sensitive_keys_are_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "ada@example.com",
            "new_password": "Correct-Horse9",
            "session_token": "abcdef123456",
            "account_id": "acct-1",
        },
    )

    assert event["email"] == "ad***om"
    assert event["new_password"] == "Co***e9"
    assert event["session_token"] == "ab***56"
    assert event["account_id"] == "acct-1"


def test_short_values_fully_masked():
    assert redact_value("abc") == "***"


def test_correlation_id_added_when_set():
    assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}

    cid = set_correlation_id()

    assert get_correlation_id() == cid
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
