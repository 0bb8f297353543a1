from ephemera.logging import _redact_pii, sanitize_error_message


class TestRedaction:
    def test_tokens_and_emails_masked(self):
        event = {
            "event": "session_issued",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "email": "ada@example.com",
            "user_id": "u1",
        }
        redacted = _redact_pii(None, "info", dict(event))
        assert redacted["refresh_token"] == "ey***ig"
        assert redacted["email"] == "ad***om"
        assert redacted["user_id"] == "u1"
        assert redacted["event"] == "session_issued"

    def test_short_secret_fully_masked(self):
        assert _redact_pii(None, "info", {"password": "abc"})["password"] == "***"


class TestSanitizeErrorMessage:
    def test_sql_and_paths_removed(self):
        message = sanitize_error_message(
            "UPDATE auth_session SET revoked_at = now() failed in /srv/ephemera/state"
        )
        assert "auth_session" not in message
        assert "/srv/ephemera" not in message

    def test_empty(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_truncated(self):
        assert len(sanitize_error_message("x" * 900)) == 500
