# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""AWS Signature Version 4 for S3 requests.

Pure functions: no I/O, no clock access.  The caller supplies one
timestamp and every time-derived value (``x-amz-date``, the credential
scope date, the signing key date) is computed from it.

The canonical header block is fixed::

    host:<host>
    x-amz-content-sha256:<payload hash>
    x-amz-date:<timestamp>

plus ``x-amz-security-token`` when temporary credentials are in use.

See:
https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-header-based-auth.html
"""

from __future__ import annotations

import functools
import hashlib
import hmac
from collections.abc import Iterable
from datetime import UTC, datetime


ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"

#: Payload hash sentinel for bodies that are streamed without hashing.
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"

SIGNED_HEADERS = "host;x-amz-content-sha256;x-amz-date"
SIGNED_HEADERS_WITH_TOKEN = SIGNED_HEADERS + ";x-amz-security-token"

EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()

_TIME_FORMAT = "%Y%m%dT%H%M%SZ"
_DATE_FORMAT = "%Y%m%d"

_AWS_UNRESERVED = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~"
)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def uri_encode(value: str, *, encode_slash: bool = True) -> str:
    """URI-encode a value using AWS's rules.

    - Unreserved characters are not encoded: A-Z, a-z, 0-9, -, _, ., ~
    - Everything else is percent-encoded per UTF-8 byte (uppercase hex)
    - Forward slashes are optionally preserved (object key paths)

    Args:
        value: String to encode.
        encode_slash: If True, encode '/'; if False, preserve '/'.

    Returns:
        URI-encoded string.
    """
    result: list[str] = []
    for ch in value:
        if ch in _AWS_UNRESERVED:
            result.append(ch)
        elif ch == "/" and not encode_slash:
            result.append("/")
        else:
            result.extend(f"%{b:02X}" for b in ch.encode("utf-8"))
    return "".join(result)


def canonical_query_string(params: Iterable[tuple[str, str]]) -> str:
    """Build the canonical query string from key/value pairs.

    Pairs are encoded, pairs with an empty key dropped, then sorted by
    encoded key with ties broken by encoded value.  Parameters without a
    value (``?uploads``) serialize as ``uploads=``.

    Args:
        params: Query parameters as (key, value) pairs, any order.

    Returns:
        Canonical query string (no leading ``?``).
    """
    encoded = sorted(
        (uri_encode(key), uri_encode(value)) for key, value in params if key
    )
    return "&".join(f"{k}={v}" for k, v in encoded)


# ---------------------------------------------------------------------------
# Timestamps and hashes
# ---------------------------------------------------------------------------


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


def amz_timestamp(timestamp: datetime) -> str:
    """Format a timestamp as ``YYYYMMDDTHHMMSSZ`` (naive means UTC)."""
    return _as_utc(timestamp).strftime(_TIME_FORMAT)


def amz_date(timestamp: datetime) -> str:
    """Format a timestamp as ``YYYYMMDD`` (naive means UTC)."""
    return _as_utc(timestamp).strftime(_DATE_FORMAT)


def payload_hash(body: bytes) -> str:
    """Lowercase hex SHA-256 of the exact request body."""
    return hashlib.sha256(body).hexdigest()


def credential_scope(date: str, region: str) -> str:
    """Build ``DATE/REGION/s3/aws4_request``."""
    return f"{date}/{region}/{SERVICE}/aws4_request"


# ---------------------------------------------------------------------------
# Canonical request
# ---------------------------------------------------------------------------


def signed_header_names(session_token: str | None = None) -> str:
    """Return the SignedHeaders value for a request."""
    if session_token:
        return SIGNED_HEADERS_WITH_TOKEN
    return SIGNED_HEADERS


def canonical_headers(
    host: str,
    content_sha256: str,
    timestamp: str,
    session_token: str | None = None,
) -> str:
    """Build the canonical header block (each line newline-terminated)."""
    lines = [
        f"host:{host.strip()}\n",
        f"x-amz-content-sha256:{content_sha256}\n",
        f"x-amz-date:{timestamp}\n",
    ]
    if session_token:
        lines.append(f"x-amz-security-token:{session_token.strip()}\n")
    return "".join(lines)


def build_canonical_request(
    method: str,
    canonical_path: str,
    canonical_query: str,
    host: str,
    content_sha256: str,
    timestamp: str,
    session_token: str | None = None,
) -> str:
    """Build the canonical request string.

    Args:
        method: HTTP method.
        canonical_path: Encoded request path (``/`` for the root).
        canonical_query: Output of :func:`canonical_query_string`.
        host: Value of the Host header.
        content_sha256: Payload hash or ``UNSIGNED-PAYLOAD``.
        timestamp: ``x-amz-date`` value.
        session_token: Temporary-credential token, if any.

    Returns:
        Canonical request string.
    """
    signed_headers = signed_header_names(session_token)
    return "\n".join(
        [
            method.upper(),
            canonical_path or "/",
            canonical_query,
            canonical_headers(host, content_sha256, timestamp, session_token),
            signed_headers,
            content_sha256,
        ]
    )


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def _hmac_sha256(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


@functools.lru_cache(maxsize=32)
def derive_signing_key(
    secret_key: str, date: str, region: str, service: str = SERVICE
) -> bytes:
    """Derive the SigV4 signing key.

    Memoized by its inputs; the result depends on nothing else.

    Args:
        secret_key: Secret access key.
        date: Date string (YYYYMMDD).
        region: Region name.
        service: Service name.

    Returns:
        Derived signing key bytes.
    """
    k_date = _hmac_sha256(("AWS4" + secret_key).encode("utf-8"), date)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


def build_string_to_sign(
    timestamp: str, scope: str, canonical_request: str
) -> str:
    """Build the SigV4 string to sign."""
    return "\n".join(
        [
            ALGORITHM,
            timestamp,
            scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ]
    )


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    """Hex-encoded HMAC-SHA256 of the string to sign."""
    return hmac.new(
        signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def sign(
    method: str,
    host: str,
    canonical_path: str,
    canonical_query: str,
    content_sha256: str,
    region: str,
    access_key: str,
    secret_key: str,
    timestamp: datetime,
    *,
    session_token: str | None = None,
) -> str:
    """Compute the Authorization header value for a request.

    Args:
        method: HTTP method.
        host: Value of the Host header.
        canonical_path: Encoded request path.
        canonical_query: Canonical query string.
        content_sha256: Payload hash or ``UNSIGNED-PAYLOAD``.
        region: Region name.
        access_key: Access key ID.
        secret_key: Secret access key.
        timestamp: The instant the request is signed; the request's
            ``x-amz-date`` header must be ``amz_timestamp(timestamp)``.
        session_token: Temporary-credential token, if any.

    Returns:
        ``AWS4-HMAC-SHA256 Credential=..., SignedHeaders=..., Signature=...``
    """
    stamp = amz_timestamp(timestamp)
    date = amz_date(timestamp)
    scope = credential_scope(date, region)

    creq = build_canonical_request(
        method,
        canonical_path,
        canonical_query,
        host,
        content_sha256,
        stamp,
        session_token,
    )
    string_to_sign = build_string_to_sign(stamp, scope, creq)
    signature = compute_signature(
        derive_signing_key(secret_key, date, region), string_to_sign
    )
    signed_headers = signed_header_names(session_token)
    return (
        f"{ALGORITHM} "
        f"Credential={access_key}/{scope}, "
        f"SignedHeaders={signed_headers}, "
        f"Signature={signature}"
    )


def signed_headers_for(
    method: str,
    host: str,
    canonical_path: str,
    canonical_query: str,
    content_sha256: str,
    region: str,
    access_key: str,
    secret_key: str,
    timestamp: datetime,
    *,
    session_token: str | None = None,
) -> dict[str, str]:
    """Return every header the signature covers, plus Authorization.

    All values derive from the single ``timestamp`` so the signed
    ``x-amz-date`` and the one sent on the wire cannot diverge.
    """
    headers = {
        "Host": host,
        "x-amz-content-sha256": content_sha256,
        "x-amz-date": amz_timestamp(timestamp),
    }
    if session_token:
        headers["x-amz-security-token"] = session_token
    headers["Authorization"] = sign(
        method,
        host,
        canonical_path,
        canonical_query,
        content_sha256,
        region,
        access_key,
        secret_key,
        timestamp,
        session_token=session_token,
    )
    return headers
