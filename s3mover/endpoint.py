# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Request target construction.

Turns (endpoint, bucket, key, query) into a :class:`RequestTarget` that
carries both the literal URL sent on the wire and the canonical path and
query fed to the signer.  The wire URL is assembled from the canonical
pieces, so the two can never disagree.

Buckets are always addressed virtual-hosted style (``bucket.host``).
"""

from __future__ import annotations

import re
import urllib.parse
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from s3mover.signing import canonical_query_string, uri_encode


_DEFAULT_PORTS = {"http": 80, "https": 443}

_MULTI_SLASH_RE = re.compile(r"/{2,}")

#: Query parameters as a mapping or an explicit sequence of pairs.
QueryParams = Mapping[str, str] | Iterable[tuple[str, str]]


class EndpointError(ValueError):
    """Raised when an endpoint URL cannot be used."""


@dataclass(frozen=True)
class Endpoint:
    """Parsed base URL of an S3-compatible service.

    Attributes:
        scheme: ``http`` or ``https``.
        host: Lowercased host name (no port).
        port: Explicit non-default port, or None.
        base_path: Path prefix of the endpoint (``""`` when none).
    """

    scheme: str
    host: str
    port: int | None = None
    base_path: str = ""

    @classmethod
    def parse(cls, url: str) -> Endpoint:
        """Parse an endpoint URL.

        Args:
            url: e.g. ``https://s3.eu-central-1.amazonaws.com``.

        Returns:
            Endpoint instance.

        Raises:
            EndpointError: If the scheme is not http(s) or the host is
                missing.
        """
        parts = urllib.parse.urlsplit(url.strip())
        scheme = parts.scheme.lower()
        if scheme not in _DEFAULT_PORTS:
            raise EndpointError(
                f"Endpoint must use http or https, got {url!r}"
            )
        if not parts.hostname:
            raise EndpointError(f"Endpoint has no host: {url!r}")
        try:
            port = parts.port
        except ValueError as exc:
            raise EndpointError(f"Invalid port in endpoint {url!r}") from exc
        if port == _DEFAULT_PORTS[scheme]:
            port = None
        base_path = _MULTI_SLASH_RE.sub("/", parts.path).rstrip("/")
        return cls(
            scheme=scheme,
            host=parts.hostname.lower(),
            port=port,
            base_path=base_path,
        )

    def host_for(self, bucket: str | None) -> str:
        """Return the Host header value, bucket-prefixed when given."""
        host = f"{bucket}.{self.host}" if bucket else self.host
        if self.port is not None:
            host = f"{host}:{self.port}"
        return host

    def __str__(self) -> str:
        return f"{self.scheme}://{self.host_for(None)}{self.base_path}"


@dataclass(frozen=True)
class RequestTarget:
    """Where a request goes, in wire and canonical form.

    Attributes:
        url: Literal URL for the HTTP request.
        host: Host header value (signed).
        canonical_path: Encoded path (signed and sent verbatim).
        canonical_query: Sorted, encoded query (signed and sent verbatim).
    """

    url: str
    host: str
    canonical_path: str
    canonical_query: str


def _query_pairs(query: QueryParams | None) -> list[tuple[str, str]]:
    if query is None:
        return []
    if isinstance(query, Mapping):
        return [(str(k), str(v)) for k, v in query.items()]
    return [(str(k), str(v)) for k, v in query]


def join_path(base_path: str, key: str | None) -> str:
    """Join the endpoint path and an object key.

    The result starts with ``/``, contains no repeated separators and is
    ``/`` when both parts are empty.
    """
    joined = f"{base_path}/{key or ''}"
    joined = _MULTI_SLASH_RE.sub("/", joined)
    if not joined.startswith("/"):
        joined = "/" + joined
    return joined


def build_target(
    endpoint: Endpoint,
    bucket: str | None = None,
    key: str | None = None,
    query: QueryParams | None = None,
) -> RequestTarget:
    """Build the request target for a bucket/key/query.

    Args:
        endpoint: Parsed service endpoint.
        bucket: Bucket name (virtual-hosted) or None for service calls.
        key: Raw (unencoded) object key, or None for bucket calls.
        query: Query parameters; pairs with an empty key are dropped.

    Returns:
        RequestTarget whose ``url`` is built from its canonical fields.
    """
    host = endpoint.host_for(bucket)
    canonical_path = uri_encode(
        join_path(endpoint.base_path, key), encode_slash=False
    )
    canonical_query = canonical_query_string(_query_pairs(query))

    url = f"{endpoint.scheme}://{host}{canonical_path}"
    if canonical_query:
        url = f"{url}?{canonical_query}"

    return RequestTarget(
        url=url,
        host=host,
        canonical_path=canonical_path,
        canonical_query=canonical_query,
    )
