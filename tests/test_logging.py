"""Tests for log redaction and context binding."""

import pytest
import structlog

from shield.logging import (
    _redact,
    _stamp_correlation_id,
    correlation_id_var,
    session_context,
)


def _run(**event):
    event.setdefault("event", "test_event")
    return _redact(None, "info", event)


class TestRedaction:
    @pytest.mark.parametrize(
        "key",
        ["access_token", "refresh_token", "authorization", "password", "jwt_secret"],
    )
    def test_credentials_fully_masked(self, key):
        value = "eyJhbGciOiJIUzI1NiJ9.payload.signature"

        assert _run(**{key: value})[key] == "[redacted]"

    def test_short_credentials_still_masked(self):
        assert _run(password="p1")["password"] == "[redacted]"

    def test_email_keeps_domain(self):
        assert _run(email="alice@example.com")["email"] == "al***@example.com"

    def test_other_fields_untouched(self):
        event = _run(session_id="sess-1", reason="logout", existed=True)

        assert event["session_id"] == "sess-1"
        assert event["reason"] == "logout"
        assert event["existed"] is True

    def test_event_name_untouched(self):
        assert _run(event="logout_token_unusable")["event"] == "logout_token_unusable"


class TestContext:
    def test_session_context_binds_and_unbinds(self):
        with session_context("sess-9"):
            assert structlog.contextvars.get_contextvars()["session_id"] == "sess-9"

        assert "session_id" not in structlog.contextvars.get_contextvars()

    def test_session_context_without_id_binds_nothing(self):
        with session_context(None):
            assert "session_id" not in structlog.contextvars.get_contextvars()

    def test_correlation_id_stamped(self):
        token = correlation_id_var.set("corr-7")
        try:
            event = _stamp_correlation_id(None, "info", {"event": "x"})
        finally:
            correlation_id_var.reset(token)

        assert event["correlation_id"] == "corr-7"
