from __future__ import annotations

from accessbundle.services.audit import sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit metadata.
    payload = {
        "access_token": "secret-access",
        "client_secret": "super-secret",
        "nested": {"authorization": "Bearer abc", "ip_allowlist": ["10.0.0.0/8"]},
        "items": [{"password": "hunter2", "role_key": "operator"}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["ip_allowlist"] == "[REDACTED]"
    assert sanitized["items"][0] == {"password": "[REDACTED]", "role_key": "operator"}
    assert sanitized["safe"] == "value"
