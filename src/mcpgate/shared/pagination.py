"""Opaque continuation cursors for list and search tools.

A cursor binds a position to a fingerprint of the filters it was produced
under. Replaying it with different filters is rejected with
:class:`~mcpgate.shared.exceptions.InvalidCursor` instead of being reinterpreted.
Cursors are signed with a per-process key unless a key is configured, so they
do not survive a restart.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from collections.abc import Mapping
from typing import Any

from mcpgate.shared.exceptions import InvalidCursor

PAGINATION_KEYS = frozenset({"cursor", "limit"})

_SIGNATURE_BYTES = 16


def _canonical(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str).encode()


def fingerprint(filters: Mapping[str, Any] | None, *, scope: str = "") -> str:
    """Stable hash of a normalized filter set.

    ``None`` values and the pagination parameters themselves do not take part,
    so ``{"q": "x", "tag": None}`` and ``{"q": "x", "limit": 5}`` share a
    fingerprint.
    """
    normalized = {
        key: value for key, value in (filters or {}).items() if key not in PAGINATION_KEYS and value is not None
    }
    digest = hashlib.sha256(scope.encode() + b"\x00" + _canonical(normalized))
    return digest.hexdigest()[:32]


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class CursorCodec:
    def __init__(self, secret: bytes | None = None):
        self._secret = secret or secrets.token_bytes(32)

    def _sign(self, payload: bytes) -> bytes:
        return hmac.new(self._secret, payload, hashlib.sha256).digest()[:_SIGNATURE_BYTES]

    def encode(self, position: Any, filter_fingerprint: str) -> str:
        payload = _canonical({"p": position, "f": filter_fingerprint})
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def decode(self, cursor: str, expected_fingerprint: str) -> Any:
        try:
            body, signature = cursor.split(".", 1)
            payload = _b64decode(body)
            if not hmac.compare_digest(_b64decode(signature), self._sign(payload)):
                raise InvalidCursor("Cursor is not valid for this server")
            decoded = json.loads(payload)
            position, filter_fingerprint = decoded["p"], decoded["f"]
        except InvalidCursor:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidCursor("Cursor is malformed") from e

        if not hmac.compare_digest(str(filter_fingerprint), expected_fingerprint):
            raise InvalidCursor("Cursor was produced for a different set of filters")
        return position
