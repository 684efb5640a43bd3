"""Tests for the error envelope and detail redaction."""

import pytest
from pydantic import ValidationError

from mcpgate.shared.errors import (
    JSONRPC_CODES,
    REDACTED_PATH,
    REDACTED_SECRET,
    ErrorCode,
    ErrorEnvelope,
    make_envelope,
    redact_details,
)
from mcpgate.shared.exceptions import (
    GatewayError,
    InternalError,
    LimitExceeded,
    SessionNotFound,
    Timeout,
    Unauthorized,
    ValidationFailed,
)


def test_every_code_has_a_jsonrpc_code():
    assert set(JSONRPC_CODES) == set(ErrorCode)
    assert len(set(JSONRPC_CODES.values())) == len(ErrorCode)


def test_envelope_requires_a_message():
    with pytest.raises(ValueError, match="requires a message"):
        make_envelope(ErrorCode.INTERNAL, "")


def test_envelope_is_immutable():
    envelope = make_envelope(ErrorCode.UNKNOWN_TOOL, "Unknown tool: nope")
    with pytest.raises(ValidationError):
        envelope.message = "changed"  # type: ignore[misc]


def test_only_timeout_is_retryable_by_default():
    assert make_envelope(ErrorCode.TIMEOUT, "slow").retryable is True
    assert make_envelope(ErrorCode.INTERNAL, "boom").retryable is False
    assert make_envelope(ErrorCode.INTERNAL, "boom", retryable=True).retryable is True


def test_wire_format_keeps_null_id():
    wire = Unauthorized("Missing or invalid bearer credential").envelope.to_wire(None)
    assert wire["jsonrpc"] == "2.0"
    assert wire["id"] is None
    assert wire["error"]["code"] == JSONRPC_CODES[ErrorCode.UNAUTHORIZED]
    assert wire["error"]["data"] == {
        "code": "Unauthorized",
        "message": "Missing or invalid bearer credential",
        "retryable": False,
    }


def test_wire_format_carries_details():
    error = LimitExceeded("too big", details={"limit": "maxRequestBytes", "max": 10, "observed": 11})
    wire = error.envelope.to_wire(7)
    assert wire["id"] == 7
    assert wire["error"]["data"]["details"] == {"limit": "maxRequestBytes", "max": 10, "observed": 11}


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (Unauthorized("x"), 401),
        (SessionNotFound("x"), 404),
        (LimitExceeded("x"), 413),
        (ValidationFailed("x"), 400),
        (InternalError("x"), 500),
        (Timeout("x"), 200),
    ],
)
def test_http_status(error: GatewayError, status: int):
    assert error.envelope.http_status == status


def test_validation_failed_lists_fields():
    error = ValidationFailed("Invalid input", [{"field": "text", "message": "'text' is a required property"}])
    assert error.envelope.code is ErrorCode.VALIDATION_FAILED
    assert error.envelope.details == {"errors": [{"field": "text", "message": "'text' is a required property"}]}


def test_host_paths_are_redacted():
    details = redact_details({"reason": "could not open /srv/data/projects/secret.db"})
    assert details == {"reason": f"could not open {REDACTED_PATH}"}


def test_windows_paths_are_redacted():
    details = redact_details({"reason": r"missing C:\Users\alice\notes.txt"})
    assert details == {"reason": f"missing {REDACTED_PATH}"}


def test_paths_supplied_by_the_caller_survive():
    details = redact_details(
        {"reason": "no such file /home/user/project/a.txt"},
        caller_input={"path": "/home/user/project/a.txt"},
    )
    assert details == {"reason": "no such file /home/user/project/a.txt"}


def test_url_paths_are_not_treated_as_host_paths():
    details = redact_details({"see": "https://example.com/docs/errors"})
    assert details == {"see": "https://example.com/docs/errors"}


def test_credentials_are_redacted():
    details = redact_details(
        {
            "header": "Authorization: Bearer abc.def-123",
            "config": "api_key=hunter2",
            "nested": {"password": "pw", "items": ["token: xyz"]},
        }
    )
    assert details is not None
    assert "abc.def-123" not in details["header"]
    assert details["config"] == REDACTED_SECRET
    assert details["nested"]["password"] == REDACTED_SECRET
    assert details["nested"]["items"] == [REDACTED_SECRET]


def test_explicit_secrets_are_redacted():
    envelope = make_envelope(
        ErrorCode.INTERNAL,
        "boom",
        details={"context": "connected with s3cr3t-value"},
        secrets=["s3cr3t-value"],
    )
    assert envelope.details == {"context": f"connected with {REDACTED_SECRET}"}


def test_redaction_applies_through_exceptions():
    error = InternalError("boom", details={"trace": "File /opt/app/handler.py, line 3"})
    assert isinstance(error.envelope, ErrorEnvelope)
    assert "/opt/app" not in str(error.envelope.details)
