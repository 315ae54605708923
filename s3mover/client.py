# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Signed S3 round trips.

:class:`S3Client` pairs the request builder, the signer, an HTTP executor
and the error classifier.  Every operation follows the same path:

1. ``build_target`` produces the wire URL and its canonical form.
2. One clock reading signs the request and fills ``x-amz-date``.
3. The executor sends it; ``check_response`` classifies statuses >= 300.
4. The body (if any) is decoded into a :mod:`s3mover.models` type.

Buffered bodies are signed with their SHA-256.  Streamed bodies go
through :class:`~s3mover.chunk_reader.BoundedChunkReader` and are signed
according to the client's :class:`~s3mover.config.PayloadPolicy`.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime

from s3mover.chunk_reader import BoundedChunkReader, Readable
from s3mover.config import ClientConfig, PayloadPolicy
from s3mover.endpoint import QueryParams, RequestTarget, build_target
from s3mover.errors import DecodeError, check_response, parse_error_body
from s3mover.models import (
    CompletedPart,
    CompleteMultipartUploadResult,
    DeleteResult,
    InitiateMultipartUploadResult,
    ListBucketsResult,
    ListMultipartUploadsResult,
    ListObjectsResult,
    ListPartsResult,
    ObjectHead,
    PutObjectResult,
    build_complete_multipart_upload,
    build_create_bucket_configuration,
    build_delete_objects,
    is_error_document,
    parse_complete_multipart_upload,
    parse_delete_result,
    parse_initiate_multipart_upload,
    parse_list_buckets,
    parse_list_multipart_uploads,
    parse_list_objects,
    parse_list_parts,
)
from s3mover.signing import UNSIGNED_PAYLOAD, payload_hash, signed_headers_for
from s3mover.transport import (
    HttpExecutor,
    HttpRequest,
    HttpResponse,
    HttpxExecutor,
)


logger = logging.getLogger(__name__)

#: Part numbers accepted by UploadPart.
MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10_000

#: Maximum keys per DeleteObjects request.
MAX_DELETE_KEYS = 1000


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _params(*pairs: tuple[str, object]) -> list[tuple[str, str]]:
    """Query pairs with None values dropped."""
    return [(k, str(v)) for k, v in pairs if v is not None]


class S3Client:
    """Client for one S3-compatible endpoint.

    The configuration is fixed for the client's lifetime and the client
    holds no other mutable state, so one instance may be shared by
    worker threads.

    Args:
        config: Endpoint, credentials and signing policy.
        executor: HTTP executor.  Defaults to an :class:`HttpxExecutor`
            owned (and closed) by this client.
        clock: Returns the signing time; injectable for tests.
    """

    def __init__(
        self,
        config: ClientConfig,
        executor: HttpExecutor | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self._owned_executor: HttpxExecutor | None = None
        if executor is None:
            self._owned_executor = HttpxExecutor(
                timeout=config.timeout_seconds
            )
            executor = self._owned_executor
        self._executor = executor
        self._clock = clock

    def close(self) -> None:
        if self._owned_executor is not None:
            self._owned_executor.close()

    def __enter__(self) -> S3Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"S3Client(endpoint={str(self.config.endpoint)!r}, "
            f"region={self.config.credentials.region!r})"
        )

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    def _sign(
        self,
        method: str,
        target: RequestTarget,
        content_sha256: str,
        extra_headers: Mapping[str, str] | None,
    ) -> dict[str, str]:
        creds = self.config.credentials
        signed = signed_headers_for(
            method,
            target.host,
            target.canonical_path,
            target.canonical_query,
            content_sha256,
            creds.region,
            creds.access_key,
            creds.secret_key,
            self._clock(),
            session_token=creds.session_token,
        )
        # Header names are case-insensitive; callers cannot replace signed ones
        signed_names = {name.lower() for name in signed}
        headers = {"User-Agent": self.config.user_agent}
        headers.update(
            (name, value)
            for name, value in (extra_headers or {}).items()
            if name.lower() not in signed_names
        )
        headers.update(signed)
        logger.debug(
            "Signed %s %s%s (payload %s): %s",
            method,
            target.host,
            target.canonical_path,
            "unsigned" if content_sha256 == UNSIGNED_PAYLOAD else "sha256",
            signed["Authorization"],
        )
        return headers

    def new_request(
        self,
        method: str,
        bucket: str | None = None,
        key: str | None = None,
        query: QueryParams | None = None,
        body: bytes = b"",
        headers: Mapping[str, str] | None = None,
    ) -> HttpRequest:
        """Build a signed request with a fully buffered body.

        The payload hash is the SHA-256 of ``body``.

        Args:
            method: HTTP method.
            bucket: Bucket name, or None for service-level calls.
            key: Raw object key.
            query: Query parameters.
            body: Request body.
            headers: Extra (unsigned) headers.

        Returns:
            Request ready for the executor.
        """
        target = build_target(self.config.endpoint, bucket, key, query)
        signed = self._sign(method, target, payload_hash(body), headers)
        if body or method.upper() in ("PUT", "POST"):
            signed["Content-Length"] = str(len(body))
        return HttpRequest(method.upper(), target.url, signed, body)

    def new_stream_request(
        self,
        method: str,
        bucket: str,
        key: str,
        stream: Readable,
        content_length: int,
        query: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        cancel_check: Callable[[], None] | None = None,
    ) -> HttpRequest:
        """Build a signed request whose body is read from ``stream``.

        Exactly ``content_length`` bytes are read, at most one chunk per
        read.  Under :attr:`PayloadPolicy.UNSIGNED` the body is streamed
        and signed as ``UNSIGNED-PAYLOAD``; under ``SIGNED`` it is
        buffered and hashed first.

        Raises:
            TransportError: (SIGNED policy) the stream ended early.
        """
        reader = BoundedChunkReader(
            stream, expected_length=content_length, cancel_check=cancel_check
        )
        if self.config.payload_policy is PayloadPolicy.SIGNED:
            return self.new_request(
                method, bucket, key, query, reader.drain(), headers
            )

        target = build_target(self.config.endpoint, bucket, key, query)
        signed = self._sign(method, target, UNSIGNED_PAYLOAD, headers)
        # A declared length keeps the body out of chunked transfer encoding
        signed["Content-Length"] = str(content_length)
        return HttpRequest(
            method.upper(), target.url, signed, reader.iter_chunks()
        )

    def do(self, request: HttpRequest) -> HttpResponse:
        """Send a request and classify the response.

        Returns:
            The open response (status < 300).  The caller closes it.

        Raises:
            TransportError: No response was received.
            ProtocolError: Status >= 300 with a parseable error body.
            DecodeError: Status >= 300 with an unparseable body.
        """
        return check_response(self._executor.send(request))

    def _do_read(self, request: HttpRequest) -> tuple[HttpResponse, bytes]:
        with self.do(request) as response:
            body = response.read()
        return response, body

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def list_buckets(self) -> ListBucketsResult:
        response, body = self._do_read(self.new_request("GET"))
        return parse_list_buckets(body, response.status_code)

    def create_bucket(self, bucket: str) -> None:
        """Create a bucket in the client's region."""
        body = build_create_bucket_configuration(
            self.config.credentials.region
        )
        self._do_read(self.new_request("PUT", bucket, body=body))
        logger.info("Created bucket %s", bucket)

    def list_objects_v2(
        self,
        bucket: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
        max_keys: int | None = None,
    ) -> ListObjectsResult:
        query = _params(
            ("list-type", 2),
            ("prefix", prefix),
            ("continuation-token", continuation_token),
            ("max-keys", max_keys),
        )
        response, body = self._do_read(
            self.new_request("GET", bucket, query=query)
        )
        return parse_list_objects(body, response.status_code)

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def head_object(self, bucket: str, key: str) -> ObjectHead:
        """Fetch object metadata.

        Raises:
            ProtocolError: ``NotFound`` (HEAD errors carry no body) and
                other rejections.
            DecodeError: Content-Length missing or invalid.
        """
        response, _ = self._do_read(self.new_request("HEAD", bucket, key))
        return ObjectHead.from_headers(response.headers, response.status_code)

    def get_object(self, bucket: str, key: str) -> bytes:
        _, body = self._do_read(self.new_request("GET", bucket, key))
        return body

    def get_object_stream(self, bucket: str, key: str) -> HttpResponse:
        """Open an object for streaming.  The caller closes the response."""
        return self.do(self.new_request("GET", bucket, key))

    def get_object_range(
        self, bucket: str, key: str, start: int, end: int
    ) -> HttpResponse:
        """Open the inclusive byte range ``[start, end]`` of an object.

        Args:
            bucket: Bucket name.
            key: Object key.
            start: First byte offset.
            end: Last byte offset (inclusive).

        Returns:
            Open response whose body is the requested range.

        Raises:
            ValueError: Invalid range.
            DecodeError: The server ignored the Range header.
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid byte range {start}-{end}")
        response = self.do(
            self.new_request(
                "GET", bucket, key, headers={"Range": f"bytes={start}-{end}"}
            )
        )
        if response.status_code != 206:
            expected = end - start + 1
            if start != 0 or response.header("content-length") != str(
                expected
            ):
                response.close()
                raise DecodeError(
                    response.status_code,
                    f"expected 206 Partial Content for bytes={start}-{end}",
                )
        return response

    def put_object(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str | None = None,
    ) -> PutObjectResult:
        headers = {"Content-Type": content_type} if content_type else None
        response, _ = self._do_read(
            self.new_request("PUT", bucket, key, body=data, headers=headers)
        )
        return PutObjectResult.from_headers(response.headers)

    def put_object_stream(
        self,
        bucket: str,
        key: str,
        stream: Readable,
        content_length: int,
        content_type: str | None = None,
        cancel_check: Callable[[], None] | None = None,
    ) -> PutObjectResult:
        """Upload ``content_length`` bytes read from ``stream``.

        Raises:
            TransportError: The stream ended early or the send failed.
        """
        headers = {"Content-Type": content_type} if content_type else None
        request = self.new_stream_request(
            "PUT",
            bucket,
            key,
            stream,
            content_length,
            headers=headers,
            cancel_check=cancel_check,
        )
        response, _ = self._do_read(request)
        return PutObjectResult.from_headers(response.headers)

    def delete_object(
        self, bucket: str, key: str, version_id: str | None = None
    ) -> str | None:
        """Delete an object (or one version of it).

        Returns:
            The ``x-amz-version-id`` response header, if any.
        """
        response, _ = self._do_read(
            self.new_request(
                "DELETE", bucket, key, query=_params(("versionId", version_id))
            )
        )
        return response.header("x-amz-version-id")

    def delete_objects(
        self, bucket: str, keys: Iterable[str], *, quiet: bool = False
    ) -> DeleteResult:
        """Delete up to 1000 keys in one request.

        Raises:
            ValueError: No keys, or more than 1000.
        """
        keys = list(keys)
        if not keys or len(keys) > MAX_DELETE_KEYS:
            raise ValueError(
                f"delete_objects takes 1..{MAX_DELETE_KEYS} keys, "
                f"got {len(keys)}"
            )
        body = build_delete_objects(keys, quiet=quiet)
        md5 = hashlib.md5(body, usedforsecurity=False).digest()
        response, data = self._do_read(
            self.new_request(
                "POST",
                bucket,
                query=_params(("delete", "")),
                body=body,
                headers={"Content-MD5": base64.b64encode(md5).decode("ascii")},
            )
        )
        return parse_delete_result(data, response.status_code)

    # ------------------------------------------------------------------
    # Multipart upload
    # ------------------------------------------------------------------

    def create_multipart_upload(
        self, bucket: str, key: str, content_type: str | None = None
    ) -> InitiateMultipartUploadResult:
        headers = {"Content-Type": content_type} if content_type else None
        response, body = self._do_read(
            self.new_request(
                "POST",
                bucket,
                key,
                query=_params(("uploads", "")),
                headers=headers,
            )
        )
        return parse_initiate_multipart_upload(body, response.status_code)

    def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        stream: Readable,
        size: int,
        cancel_check: Callable[[], None] | None = None,
    ) -> str:
        """Upload one part from ``stream``.

        Returns:
            The part's ETag exactly as the server returned it.

        Raises:
            ValueError: Part number outside 1..10000.
            DecodeError: The response carries no ETag.
        """
        if not MIN_PART_NUMBER <= part_number <= MAX_PART_NUMBER:
            raise ValueError(
                f"Part number must be {MIN_PART_NUMBER}..{MAX_PART_NUMBER}, "
                f"got {part_number}"
            )
        request = self.new_stream_request(
            "PUT",
            bucket,
            key,
            stream,
            size,
            query=_params(("partNumber", part_number), ("uploadId", upload_id)),
            cancel_check=cancel_check,
        )
        response, _ = self._do_read(request)
        etag = response.header("etag")
        if not etag:
            raise DecodeError(
                response.status_code,
                f"UploadPart {part_number} returned no ETag",
            )
        return etag

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Iterable[CompletedPart],
    ) -> CompleteMultipartUploadResult:
        """Assemble the uploaded parts into the final object.

        Parts may be given in any order; they are submitted ascending.

        Raises:
            ValueError: Part numbers are not exactly ``1..n``.
            ProtocolError: Rejected, including a 200 response whose body
                is an ``<Error>`` document.
        """
        payload = build_complete_multipart_upload(parts)
        response, body = self._do_read(
            self.new_request(
                "POST",
                bucket,
                key,
                query=_params(("uploadId", upload_id)),
                body=payload,
            )
        )
        if is_error_document(body):
            raise parse_error_body(
                response.status_code,
                body,
                request_id=response.header("x-amz-request-id") or "",
            )
        return parse_complete_multipart_upload(
            body,
            response.status_code,
            version_id=response.header("x-amz-version-id"),
        )

    def abort_multipart_upload(
        self, bucket: str, key: str, upload_id: str
    ) -> None:
        self._do_read(
            self.new_request(
                "DELETE", bucket, key, query=_params(("uploadId", upload_id))
            )
        )

    def list_multipart_uploads(
        self,
        bucket: str,
        prefix: str | None = None,
        key_marker: str | None = None,
        upload_id_marker: str | None = None,
        max_uploads: int | None = None,
    ) -> ListMultipartUploadsResult:
        query = _params(
            ("uploads", ""),
            ("prefix", prefix),
            ("key-marker", key_marker),
            ("upload-id-marker", upload_id_marker),
            ("max-uploads", max_uploads),
        )
        response, body = self._do_read(
            self.new_request("GET", bucket, query=query)
        )
        return parse_list_multipart_uploads(body, response.status_code)

    def list_parts(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number_marker: int | None = None,
        max_parts: int | None = None,
    ) -> ListPartsResult:
        query = _params(
            ("uploadId", upload_id),
            ("part-number-marker", part_number_marker),
            ("max-parts", max_parts),
        )
        response, body = self._do_read(
            self.new_request("GET", bucket, key, query=query)
        )
        return parse_list_parts(body, response.status_code)
