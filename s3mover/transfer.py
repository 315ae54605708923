# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Multipart transfer coordinator.

Moves an object from a :class:`RangeSource` (a remote object, a buffer or
a local file) to a target bucket:

- size 0: nothing is sent (no-op single-object transfer)
- size <= part size: one buffered PUT signed with its SHA-256
- larger: a multipart session whose parts are uploaded by a bounded
  thread pool, then completed with the part list sorted ascending

Any part failure stops the remaining parts and aborts the session.  The
triggering error is raised; a failure of the abort itself is attached to
it (``abort_error``), never raised in its place.  Setting the caller's
cancel event has the same effect, raising :class:`TransferCancelledError`.

Sessions orphaned by crashed runs can be listed and aborted with
:meth:`TransferCoordinator.list_incomplete_uploads` and
:meth:`TransferCoordinator.abort_incomplete_uploads`.
"""

from __future__ import annotations

import io
import logging
import math
import mimetypes
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol

from s3mover.chunk_reader import BoundedChunkReader, Readable
from s3mover.client import MAX_PART_NUMBER, S3Client
from s3mover.config import TransferConfig
from s3mover.errors import (
    CompletionError,
    DecodeError,
    PartUploadError,
    S3Error,
    TransferCancelledError,
)
from s3mover.models import CompletedPart, MultipartUpload, ObjectHead, Part


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Range planning
# ---------------------------------------------------------------------------


@dataclass
class TransferPart:
    """One part of a multipart transfer.

    Attributes:
        part_number: 1-based part number.
        start: First byte offset (inclusive).
        end: Last byte offset (inclusive).
        etag: ETag returned by UploadPart; None until uploaded.
    """

    part_number: int
    start: int
    end: int
    etag: str | None = None

    @property
    def size(self) -> int:
        return self.end - self.start + 1


def plan_parts(total_size: int, part_size: int) -> list[TransferPart]:
    """Split ``total_size`` bytes into ``part_size`` ranges.

    Part ``i`` covers ``[(i-1)*part_size, min(i*part_size, total_size) - 1]``.

    Args:
        total_size: Object size in bytes.
        part_size: Bytes per part.

    Returns:
        Parts numbered ``1..ceil(total_size / part_size)``; empty for an
        empty object.

    Raises:
        ValueError: Negative size or non-positive part size.
    """
    if total_size < 0:
        raise ValueError(f"Size must be >= 0, got {total_size}")
    if part_size < 1:
        raise ValueError(f"Part size must be >= 1, got {part_size}")

    count = math.ceil(total_size / part_size)
    return [
        TransferPart(
            part_number=i,
            start=(i - 1) * part_size,
            end=min(i * part_size - 1, total_size - 1),
        )
        for i in range(1, count + 1)
    ]


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class SessionState(Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIATED: frozenset(
        {SessionState.IN_PROGRESS, SessionState.ABORTED}
    ),
    SessionState.IN_PROGRESS: frozenset(
        {SessionState.COMPLETED, SessionState.ABORTED}
    ),
    SessionState.COMPLETED: frozenset(),
    SessionState.ABORTED: frozenset(),
}


class SessionStateError(RuntimeError):
    """An operation is not valid in the session's current state."""


class MultipartUploadSession:
    """Client-side bookkeeping for one multipart upload.

    Thread-safe: workers record ETags concurrently.

    Args:
        bucket: Target bucket.
        key: Target key.
        upload_id: ID returned by CreateMultipartUpload.
        parts: Planned parts (ascending, contiguous).
    """

    def __init__(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: list[TransferPart],
    ) -> None:
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self.parts = parts
        self._by_number = {p.part_number: p for p in parts}
        self._state = SessionState.INITIATED
        self._lock = threading.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        """True until the session is completed or aborted."""
        return self._state in (SessionState.INITIATED, SessionState.IN_PROGRESS)

    def _transition(self, new_state: SessionState) -> None:
        with self._lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise SessionStateError(
                    f"Upload {self.upload_id}: cannot go from "
                    f"{self._state.value} to {new_state.value}"
                )
            self._state = new_state

    def start(self) -> None:
        self._transition(SessionState.IN_PROGRESS)

    def mark_completed(self) -> None:
        self._transition(SessionState.COMPLETED)

    def mark_aborted(self) -> None:
        self._transition(SessionState.ABORTED)

    def record_etag(self, part_number: int, etag: str) -> None:
        """Store the ETag returned for a part.

        Raises:
            SessionStateError: Session is not in progress.
            KeyError: Unknown part number.
        """
        with self._lock:
            if self._state is not SessionState.IN_PROGRESS:
                raise SessionStateError(
                    f"Upload {self.upload_id} is {self._state.value}"
                )
            self._by_number[part_number].etag = etag

    def completed_parts(self) -> list[CompletedPart]:
        """Return the part list for completion, sorted ascending.

        Raises:
            SessionStateError: A part has not been uploaded.
        """
        with self._lock:
            missing = [p.part_number for p in self.parts if p.etag is None]
            if missing:
                raise SessionStateError(
                    f"Upload {self.upload_id}: parts {missing} not uploaded"
                )
            return sorted(
                (
                    CompletedPart(p.part_number, p.etag)
                    for p in self.parts
                    if p.etag is not None
                ),
                key=lambda p: p.part_number,
            )


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class RangeSource(Protocol):
    """Where transferred bytes come from."""

    def size(self) -> int:
        """Total size in bytes."""
        ...

    def open_range(
        self, start: int, end: int
    ) -> AbstractContextManager[Readable]:
        """Open the inclusive byte range ``[start, end]`` for reading."""
        ...


class RemoteObjectSource:
    """An object on a (possibly different) S3 endpoint.

    The size comes from one HEAD request; ranges are ranged GETs.
    """

    def __init__(self, client: S3Client, bucket: str, key: str) -> None:
        self.client = client
        self.bucket = bucket
        self.key = key
        self._head: ObjectHead | None = None

    def head(self) -> ObjectHead:
        if self._head is None:
            self._head = self.client.head_object(self.bucket, self.key)
        return self._head

    def size(self) -> int:
        return self.head().size

    @contextmanager
    def open_range(self, start: int, end: int) -> Iterator[Readable]:
        with self.client.get_object_range(
            self.bucket, self.key, start, end
        ) as response:
            yield response.body


class BufferSource:
    """In-memory bytes."""

    def __init__(self, data: bytes) -> None:
        self._data = data

    def size(self) -> int:
        return len(self._data)

    @contextmanager
    def open_range(self, start: int, end: int) -> Iterator[Readable]:
        yield io.BytesIO(self._data[start : end + 1])


class FileSource:
    """A local file, read with one handle per range."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def size(self) -> int:
        return self.path.stat().st_size

    @contextmanager
    def open_range(self, start: int, end: int) -> Iterator[Readable]:
        # The upload reads exactly end - start + 1 bytes from here
        with open(self.path, "rb") as f:
            f.seek(start)
            yield f


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TransferStrategy(Enum):
    SINGLE = "single"
    MULTIPART = "multipart"


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a completed transfer.

    Attributes:
        strategy: Single request or multipart session.
        size: Bytes transferred.
        etag: ETag of the new object (None for an empty source, where
            nothing is sent).
        upload_id: Multipart upload ID, None for single transfers.
        parts: Completed parts in ascending order (multipart only).
    """

    strategy: TransferStrategy
    size: int
    etag: str | None = None
    upload_id: str | None = None
    parts: list[CompletedPart] = field(default_factory=list)


@dataclass
class AbortReport:
    """Outcome of a stale-session cleanup."""

    aborted: list[MultipartUpload] = field(default_factory=list)
    failed: list[tuple[MultipartUpload, S3Error]] = field(default_factory=list)


class _Stopped(Exception):
    """A part stopped early because the transfer is being torn down."""


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class TransferCoordinator:
    """Drives single-shot and multipart transfers into one target.

    Args:
        target: Client for the target endpoint.
        config: Part size and worker count.
    """

    def __init__(
        self, target: S3Client, config: TransferConfig | None = None
    ) -> None:
        self.target = target
        self.config = config or TransferConfig()

    # -- public entry points -------------------------------------------

    def transfer(
        self,
        source: RangeSource,
        bucket: str,
        key: str,
        *,
        content_type: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TransferResult:
        """Move ``source`` to ``bucket/key``.

        Args:
            source: Where the bytes come from.
            bucket: Target bucket.
            key: Target key.
            content_type: Content-Type of the new object.
            cancel_event: Set by the caller to cancel the transfer.

        Returns:
            TransferResult describing what was done.

        Raises:
            PartUploadError: A part failed; the session was aborted.
            CompletionError: CompleteMultipartUpload failed; the session
                was aborted.
            TransferCancelledError: ``cancel_event`` was set.
            S3Error: The size query, single PUT or session creation
                failed (no session to abort).
        """
        cancel = cancel_event or threading.Event()
        if cancel.is_set():
            raise TransferCancelledError(
                "Transfer cancelled before start", upload_id=None, cause=None
            )

        size = source.size()
        if size == 0:
            logger.info("%s/%s: empty source, nothing to send", bucket, key)
            return TransferResult(strategy=TransferStrategy.SINGLE, size=0)

        if size <= self.config.part_size:
            return self._transfer_single(
                source, bucket, key, size, content_type, cancel
            )
        return self._transfer_multipart(
            source, bucket, key, size, content_type, cancel
        )

    def copy_object(
        self,
        source_client: S3Client,
        source_bucket: str,
        source_key: str,
        bucket: str,
        key: str | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> TransferResult:
        """Copy an object from another endpoint (or the same one).

        The source's Content-Type is carried over.
        """
        source = RemoteObjectSource(source_client, source_bucket, source_key)
        return self.transfer(
            source,
            bucket,
            key or source_key,
            content_type=source.head().content_type,
            cancel_event=cancel_event,
        )

    def upload_bytes(
        self,
        data: bytes,
        bucket: str,
        key: str,
        *,
        content_type: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TransferResult:
        return self.transfer(
            BufferSource(data),
            bucket,
            key,
            content_type=content_type,
            cancel_event=cancel_event,
        )

    def upload_file(
        self,
        path: Path,
        bucket: str,
        key: str | None = None,
        *,
        content_type: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TransferResult:
        """Upload a local file; the key defaults to the file name."""
        path = Path(path)
        if content_type is None:
            content_type, _ = mimetypes.guess_type(path.name)
        return self.transfer(
            FileSource(path),
            bucket,
            key or path.name,
            content_type=content_type,
            cancel_event=cancel_event,
        )

    # -- strategies ----------------------------------------------------

    def _transfer_single(
        self,
        source: RangeSource,
        bucket: str,
        key: str,
        size: int,
        content_type: str | None,
        cancel: threading.Event,
    ) -> TransferResult:
        logger.info("%s/%s: single request (%d bytes)", bucket, key, size)

        def check() -> None:
            if cancel.is_set():
                raise _Stopped

        try:
            with source.open_range(0, size - 1) as stream:
                data = BoundedChunkReader(
                    stream, expected_length=size, cancel_check=check
                ).drain()
            check()
            result = self.target.put_object(
                bucket, key, data, content_type=content_type
            )
        except _Stopped:
            raise TransferCancelledError(
                f"Transfer of {bucket}/{key} cancelled",
                upload_id=None,
                cause=None,
            ) from None
        return TransferResult(
            strategy=TransferStrategy.SINGLE, size=size, etag=result.etag
        )

    def _transfer_multipart(
        self,
        source: RangeSource,
        bucket: str,
        key: str,
        size: int,
        content_type: str | None,
        cancel: threading.Event,
    ) -> TransferResult:
        parts = plan_parts(size, self.config.part_size)
        if len(parts) > MAX_PART_NUMBER:
            raise ValueError(
                f"{size} bytes in {self.config.part_size}-byte parts needs "
                f"{len(parts)} parts (max {MAX_PART_NUMBER}); "
                f"increase the part size"
            )

        initiated = self.target.create_multipart_upload(
            bucket, key, content_type=content_type
        )
        session = MultipartUploadSession(
            bucket, key, initiated.upload_id, parts
        )
        logger.info(
            "%s/%s: multipart upload %s started (%d bytes, %d parts)",
            bucket,
            key,
            session.upload_id,
            size,
            len(parts),
        )

        session.start()
        self._upload_parts(session, source, cancel)

        completed = session.completed_parts()
        try:
            result = self.target.complete_multipart_upload(
                bucket, key, session.upload_id, completed
            )
        except S3Error as exc:
            abort_error = self._abort_session(session)
            raise CompletionError(
                f"Completing upload {session.upload_id} failed: {exc}",
                upload_id=session.upload_id,
                cause=exc,
                abort_error=abort_error,
            ) from exc

        session.mark_completed()
        logger.info(
            "%s/%s: multipart upload %s completed",
            bucket,
            key,
            session.upload_id,
        )
        return TransferResult(
            strategy=TransferStrategy.MULTIPART,
            size=size,
            etag=result.etag,
            upload_id=session.upload_id,
            parts=completed,
        )

    def _upload_parts(
        self,
        session: MultipartUploadSession,
        source: RangeSource,
        cancel: threading.Event,
    ) -> None:
        """Upload every part; abort the session and raise on failure."""
        stop = threading.Event()

        def check() -> None:
            if stop.is_set() or cancel.is_set():
                raise _Stopped

        workers = min(self.config.max_workers, len(session.parts))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="S3Part"
        ) as pool:
            futures: dict[Future[None], TransferPart] = {}
            for part in session.parts:
                future = pool.submit(
                    self._upload_part, session, part, source, check
                )
                futures[future] = part
            _, not_done = wait(futures, return_when=FIRST_EXCEPTION)
            if not_done:
                # A part failed: queued parts never start, running ones
                # stop at their next read
                stop.set()
                for future in not_done:
                    future.cancel()

        failures = sorted(
            (
                (futures[f].part_number, f.exception())
                for f in futures
                if not f.cancelled() and f.exception() is not None
            ),
            key=lambda item: item[0],
        )
        errors = [
            (number, exc)
            for number, exc in failures
            if not isinstance(exc, _Stopped)
        ]

        if errors:
            part_number, cause = errors[0]
            abort_error = self._abort_session(session)
            raise PartUploadError(
                part_number,
                upload_id=session.upload_id,
                cause=cause,
                abort_error=abort_error,
            ) from cause

        if failures or cancel.is_set():
            abort_error = self._abort_session(session)
            raise TransferCancelledError(
                f"Upload {session.upload_id} cancelled",
                upload_id=session.upload_id,
                cause=None,
                abort_error=abort_error,
            )

    def _upload_part(
        self,
        session: MultipartUploadSession,
        part: TransferPart,
        source: RangeSource,
        check: Callable[[], None],
    ) -> None:
        check()
        with source.open_range(part.start, part.end) as stream:
            etag = self.target.upload_part(
                session.bucket,
                session.key,
                session.upload_id,
                part.part_number,
                stream,
                part.size,
                cancel_check=check,
            )
        session.record_etag(part.part_number, etag)
        logger.info(
            "Upload %s: part %d/%d done (%d bytes)",
            session.upload_id,
            part.part_number,
            len(session.parts),
            part.size,
        )

    def _abort_session(self, session: MultipartUploadSession) -> S3Error | None:
        """Abort a failed session.

        Returns:
            None if aborted, else the abort's own error (the session is
            then left for :meth:`abort_incomplete_uploads`).
        """
        try:
            self.target.abort_multipart_upload(
                session.bucket, session.key, session.upload_id
            )
        except S3Error as exc:
            logger.warning(
                "Aborting upload %s of %s/%s failed: %s",
                session.upload_id,
                session.bucket,
                session.key,
                exc,
            )
            return exc
        session.mark_aborted()
        logger.warning(
            "Aborted upload %s of %s/%s",
            session.upload_id,
            session.bucket,
            session.key,
        )
        return None

    # -- session management --------------------------------------------

    def list_incomplete_uploads(
        self, bucket: str, prefix: str | None = None
    ) -> list[MultipartUpload]:
        """List every in-progress multipart upload, across all pages.

        Raises:
            DecodeError: A truncated page carries no next markers.
        """
        uploads: list[MultipartUpload] = []
        key_marker: str | None = None
        upload_id_marker: str | None = None
        while True:
            page = self.target.list_multipart_uploads(
                bucket,
                prefix=prefix,
                key_marker=key_marker,
                upload_id_marker=upload_id_marker,
            )
            uploads.extend(page.uploads)
            if not page.is_truncated:
                return uploads
            if not page.next_key_marker and not page.next_upload_id_marker:
                raise DecodeError(
                    200, "truncated ListMultipartUploads without next markers"
                )
            key_marker = page.next_key_marker or None
            upload_id_marker = page.next_upload_id_marker or None

    def list_uploaded_parts(
        self, bucket: str, key: str, upload_id: str
    ) -> list[Part]:
        """List every part uploaded so far, across all pages.

        Raises:
            DecodeError: A truncated page does not advance the marker.
        """
        parts: list[Part] = []
        marker: int | None = None
        while True:
            page = self.target.list_parts(
                bucket, key, upload_id, part_number_marker=marker
            )
            parts.extend(page.parts)
            if not page.is_truncated:
                return parts
            if page.next_part_number_marker <= (marker or 0):
                raise DecodeError(
                    200, "truncated ListParts without a later next marker"
                )
            marker = page.next_part_number_marker

    def abort_upload(self, bucket: str, key: str, upload_id: str) -> None:
        self.target.abort_multipart_upload(bucket, key, upload_id)
        logger.info("Aborted upload %s of %s/%s", upload_id, bucket, key)

    def abort_incomplete_uploads(
        self,
        bucket: str,
        prefix: str | None = None,
        older_than: timedelta | None = None,
        now: datetime | None = None,
    ) -> AbortReport:
        """Abort in-progress uploads left behind by earlier runs.

        One failing abort does not stop the others; failures are
        collected in the report.

        Args:
            bucket: Bucket to clean up.
            prefix: Only uploads whose key starts with this.
            older_than: Only uploads initiated at least this long ago.
                Uploads without an initiation time are then skipped.
            now: Reference time for ``older_than`` (default: now; naive is UTC).

        Returns:
            AbortReport of aborted and failed uploads.
        """
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        report = AbortReport()
        for upload in self.list_incomplete_uploads(bucket, prefix):
            if older_than is not None and (
                upload.initiated is None or now - upload.initiated < older_than
            ):
                continue
            try:
                self.abort_upload(bucket, upload.key, upload.upload_id)
            except S3Error as exc:
                logger.warning(
                    "Could not abort upload %s of %s/%s: %s",
                    upload.upload_id,
                    bucket,
                    upload.key,
                    exc,
                )
                report.failed.append((upload, exc))
            else:
                report.aborted.append(upload)
        return report
