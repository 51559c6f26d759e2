"""Webhook signature verification for aggregator deliveries.

The aggregator signs each delivery with HMAC-SHA256 over the timestamp and the
raw request body, and sends ``t=<unix-seconds>,v1=<hex-digest>`` in the
``terra-signature`` header.  Two message layouts have been used over time,
``"{t}.{body}"`` and ``"{t}{body}"``; both are accepted.

Verification must run on the byte-exact body before JSON parsing.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

logger = logging.getLogger("vitalink.wearables.signature")

SIGNATURE_HEADERS = ("terra-signature", "x-terra-signature")
_SEPARATORS = (b".", b"")


class SignatureError(ValueError):
    """Raised when a signature header cannot be parsed."""


def parse_signature_header(header: str) -> tuple[str, str]:
    """Split a ``t=...,v1=...`` header into (timestamp, hex digest).

    Raises:
        SignatureError: If either part is missing or empty.
    """
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()

    timestamp = parts.get("t")
    digest = parts.get("v1")
    if not timestamp or not digest:
        raise SignatureError("Signature header must contain t= and v1= parts")
    if not timestamp.isdigit():
        raise SignatureError(f"Signature timestamp is not numeric: {timestamp!r}")
    return timestamp, digest


def _to_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(
    body: bytes | str, timestamp: str, secret: str, separator: bytes = b"."
) -> str:
    """Return the hex HMAC-SHA256 of ``timestamp + separator + body``."""
    message = timestamp.encode("ascii") + separator + _to_bytes(body)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, header: str | None, secret: str) -> bool:
    """Return True if ``header`` authenticates ``body`` under ``secret``.

    Fails closed: a missing or malformed header, an empty secret, or a digest
    that matches neither message layout all return False.
    """
    if not header or not secret:
        logger.warning("Webhook signature rejected: missing header or secret")
        return False

    try:
        timestamp, expected = parse_signature_header(header)
    except SignatureError as exc:
        logger.warning("Webhook signature rejected: %s", exc)
        return False

    expected = expected.lower()
    matched = False
    for separator in _SEPARATORS:
        candidate = compute_signature(body, timestamp, secret, separator)
        # evaluate both layouts so timing does not reveal which one matched
        matched |= hmac.compare_digest(candidate, expected)

    if not matched:
        logger.warning("Webhook signature rejected: digest mismatch (t=%s)", timestamp)
    return matched


def sign_payload(
    body: bytes | str,
    secret: str,
    timestamp: int | None = None,
    separator: bytes = b".",
) -> str:
    """Build a signature header for ``body``.

    Used by the webhook test harness and tests to produce deliveries in
    either layout.
    """
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={ts},v1={compute_signature(body, ts, secret, separator)}"
