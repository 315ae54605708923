# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Error taxonomy and response classification.

Every response passes through :func:`check_response` before its body is
touched.  Statuses >= 300 are decoded against the uniform S3 error schema
(``<Error><Code/><Message/><Resource/><RequestId/></Error>``):

- body parsed  -> :class:`ProtocolError` (the server said why)
- body garbled -> :class:`DecodeError` (the response is unintelligible)

Failures of the round trip itself are :class:`TransportError`.  None of
these are retried here.
"""

from __future__ import annotations

import http
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from s3mover.transport import HttpResponse


#: Maximum number of body bytes echoed in DecodeError messages.
_BODY_PREVIEW = 200


class S3Error(Exception):
    """Base class for all s3mover errors."""


class TransportError(S3Error):
    """The HTTP executor failed to complete the round trip.

    Also raised when a streamed body ends before its declared length.

    Attributes:
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ProtocolError(S3Error):
    """The server rejected the request with a parseable error body.

    Attributes:
        status: HTTP status code of the response.
        code: S3 error code (e.g. ``NoSuchKey``, ``AccessDenied``).
        message: Human-readable message from the server.
        resource: Bucket or object the error refers to.
        request_id: Server-assigned request identifier.
    """

    def __init__(
        self,
        status: int,
        code: str,
        message: str = "",
        resource: str = "",
        request_id: str = "",
    ) -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.status = status
        self.code = code
        self.message = message
        self.resource = resource
        self.request_id = request_id


class DecodeError(S3Error):
    """A response body could not be decoded.

    Raised for error responses whose body is not a valid error document
    and for success responses whose body does not match the expected
    schema.

    Attributes:
        status: HTTP status code of the response.
        reason: What failed to decode.
        body: The raw body bytes.
    """

    def __init__(self, status: int, reason: str, body: bytes = b"") -> None:
        preview = body[:_BODY_PREVIEW].decode("utf-8", errors="replace")
        super().__init__(f"HTTP {status}: {reason}: {preview!r}")
        self.status = status
        self.reason = reason
        self.body = body


class TransferAbortedError(S3Error):
    """A multipart session was aborted after a failure.

    The triggering error is always ``cause``; a failure of the abort
    request itself is reported separately in ``abort_error`` and never
    replaces it.

    Attributes:
        upload_id: The aborted session's upload ID (None when the
            transfer was stopped before a session existed).
        cause: The error that triggered the abort.
        abort_error: Error raised by AbortMultipartUpload, or None if the
            abort succeeded.
    """

    def __init__(
        self,
        message: str,
        *,
        upload_id: str | None,
        cause: BaseException | None,
        abort_error: S3Error | None = None,
    ) -> None:
        if abort_error is not None:
            message = f"{message} (abort also failed: {abort_error})"
        super().__init__(message)
        self.upload_id = upload_id
        self.cause = cause
        self.abort_error = abort_error


class PartUploadError(TransferAbortedError):
    """Uploading (or fetching) one part failed.

    Attributes:
        part_number: 1-based number of the failed part.
    """

    def __init__(
        self,
        part_number: int,
        *,
        upload_id: str,
        cause: BaseException,
        abort_error: S3Error | None = None,
    ) -> None:
        super().__init__(
            f"Part {part_number} failed: {cause}",
            upload_id=upload_id,
            cause=cause,
            abort_error=abort_error,
        )
        self.part_number = part_number


class CompletionError(TransferAbortedError):
    """CompleteMultipartUpload was rejected after all parts uploaded."""


class TransferCancelledError(TransferAbortedError):
    """The caller cancelled the transfer while a session was active."""


def _local_name(tag: str) -> str:
    """Strip an ``{namespace}`` prefix from an ElementTree tag."""
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> str:
    for child in element:
        if _local_name(child.tag) == name:
            return (child.text or "").strip()
    return ""


def parse_error_body(
    status: int,
    body: bytes,
    *,
    request_id: str = "",
    bodyless: bool = False,
) -> ProtocolError | DecodeError:
    """Classify an error response body.

    Args:
        status: HTTP status (>= 300).
        body: Raw response body.
        request_id: Value of ``x-amz-request-id``, used when the body
            does not carry one.
        bodyless: True for responses that cannot carry a body (HEAD).
            An empty body then maps to a ProtocolError named after the
            status instead of a DecodeError.

    Returns:
        The error to raise.
    """
    if bodyless and not body.strip():
        try:
            phrase = http.HTTPStatus(status).phrase
        except ValueError:
            phrase = ""
        code = phrase.replace(" ", "") or str(status)
        return ProtocolError(status, code, phrase, request_id=request_id)

    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        return DecodeError(status, f"malformed error body ({exc})", body)

    if _local_name(root.tag) != "Error":
        return DecodeError(
            status, f"unexpected root element <{_local_name(root.tag)}>", body
        )

    code = _child_text(root, "Code")
    if not code:
        return DecodeError(status, "error body has no Code", body)

    return ProtocolError(
        status,
        code,
        _child_text(root, "Message"),
        _child_text(root, "Resource"),
        _child_text(root, "RequestId") or request_id,
    )


def check_response(response: HttpResponse) -> HttpResponse:
    """Raise the classified error for statuses >= 300.

    Successful responses are returned untouched (body unread).  For
    errors the body is drained and the response closed before raising.

    Args:
        response: Response from the HTTP executor.

    Returns:
        The same response when the status is below 300.

    Raises:
        ProtocolError: Error body parsed.
        DecodeError: Error body unparseable.
        TransportError: Reading the error body failed.
    """
    if response.status_code < 300:
        return response

    try:
        body = response.read()
    finally:
        response.close()

    raise parse_error_body(
        response.status_code,
        body,
        request_id=response.header("x-amz-request-id") or "",
        bodyless=response.method == "HEAD",
    )
