# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""HTTP execution boundary.

The client only needs something that can send a fully formed request
(method, URL, headers, bytes or an iterator of byte chunks) and hand back
status, headers and a readable body.  :class:`HttpExecutor` is that
contract; :class:`HttpxExecutor` implements it with ``httpx``.

Retries, connection pooling and TLS belong to the executor, not to the
signing or transfer code.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from s3mover.chunk_reader import Readable
from s3mover.errors import TransportError


logger = logging.getLogger(__name__)


@dataclass
class HttpRequest:
    """A fully formed, already signed request.

    Attributes:
        method: HTTP method.
        url: Absolute URL, sent verbatim.
        headers: Request headers.
        content: Buffered body bytes, or an iterator of chunks for
            streamed bodies.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes | Iterable[bytes] = b""


class HttpResponse:
    """Status, headers and an open body stream.

    The body is always present (empty for bodiless responses), so error
    paths never have to check for a missing body.  Close the response
    (or use it as a context manager) once the body has been consumed.

    Args:
        status_code: HTTP status.
        headers: Response headers (looked up case-insensitively).
        body: Readable body stream.
        method: Method of the request that produced this response.
        on_close: Called once when the response is closed.
    """

    def __init__(
        self,
        status_code: int,
        headers: Mapping[str, str] | None = None,
        body: Readable | None = None,
        *,
        method: str = "GET",
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.body: Readable = body if body is not None else io.BytesIO()
        self.method = method.upper()
        self._on_close = on_close
        self._closed = False

    def header(self, name: str) -> str | None:
        """Return a header value, or None if absent."""
        return self.headers.get(name.lower())

    def read(self) -> bytes:
        """Read the remaining body."""
        return self.body.read()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> HttpResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<HttpResponse {self.method} {self.status_code}>"


class HttpExecutor(Protocol):
    """Sends requests.  Raises TransportError when no response arrives."""

    def send(self, request: HttpRequest) -> HttpResponse: ...


# ---------------------------------------------------------------------------
# httpx implementation
# ---------------------------------------------------------------------------


class _HttpxBody:
    """File-like ``read(size)`` over a streaming httpx response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._iter: Iterator[bytes] | None = None
        self._pending = b""

    def _next_chunk(self) -> bytes:
        if self._iter is None:
            self._iter = self._response.iter_bytes()
        try:
            return next(self._iter, b"")
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Reading response body failed: {exc}", cause=exc
            ) from exc

    def read(self, size: int = -1, /) -> bytes:
        if size is None or size < 0:
            parts = [self._pending]
            self._pending = b""
            while chunk := self._next_chunk():
                parts.append(chunk)
            return b"".join(parts)

        if not self._pending:
            self._pending = self._next_chunk()
        data = self._pending[:size]
        self._pending = self._pending[size:]
        return data


class HttpxExecutor:
    """HttpExecutor backed by an ``httpx.Client``.

    Args:
        client: Client to use.  When omitted one is created (and closed
            by :meth:`close`).
        timeout: Timeout in seconds for a created client.
    """

    def __init__(
        self, client: httpx.Client | None = None, *, timeout: float = 60.0
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def send(self, request: HttpRequest) -> HttpResponse:
        """Send a request and return the streaming response.

        Raises:
            TransportError: On any httpx transport failure.
        """
        try:
            httpx_request = self._client.build_request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.content,
            )
            response = self._client.send(httpx_request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(
                f"{request.method} {request.url} failed: {exc}", cause=exc
            ) from exc

        logger.debug(
            "%s %s -> %d", request.method, request.url, response.status_code
        )
        return HttpResponse(
            response.status_code,
            response.headers,
            _HttpxBody(response),
            method=request.method,
            on_close=response.close,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpxExecutor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
