# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Bounded chunk reader for streamed request bodies.

Wraps any readable byte source so that no single read returns more than
``chunk_size`` bytes, however large the caller's buffer is.  Streamed
uploads pull their body through :meth:`BoundedChunkReader.iter_chunks`,
which also enforces the declared body length: short reads from the
source are retried until the length is reached, and a source that ends
early is an error rather than a silently truncated part.
"""

from __future__ import annotations

import io
from collections.abc import Callable, Iterator
from typing import Protocol

from s3mover.errors import TransportError


#: Default maximum bytes per read (4 KiB).
DEFAULT_CHUNK_SIZE = 4096


class Readable(Protocol):
    """Anything with a ``read(size)`` returning bytes (``b""`` at EOF)."""

    def read(self, size: int = -1, /) -> bytes: ...


class BoundedChunkReader(io.RawIOBase):
    """Raw stream that caps every read at ``chunk_size`` bytes.

    EOF and exceptions from the wrapped source are forwarded unchanged.
    The reader holds no buffer of its own.

    Args:
        source: The wrapped byte source.
        chunk_size: Maximum bytes returned by one read.
        expected_length: Declared body length enforced by
            :meth:`iter_chunks`; None streams until EOF.
        cancel_check: Called before every read; raises to abort the
            stream (used for transfer cancellation).
    """

    def __init__(
        self,
        source: Readable,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        *,
        expected_length: int | None = None,
        cancel_check: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if expected_length is not None and expected_length < 0:
            raise ValueError(
                f"expected_length must be >= 0, got {expected_length}"
            )
        self._source = source
        self._chunk_size = chunk_size
        self._expected_length = expected_length
        self._cancel_check = cancel_check
        self._bytes_read = 0

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def bytes_read(self) -> int:
        """Total bytes delivered so far."""
        return self._bytes_read

    def readable(self) -> bool:
        return True

    def readinto(  # type: ignore[override]
        self, buffer: bytearray | memoryview
    ) -> int:
        """Read at most ``chunk_size`` bytes into ``buffer``.

        Returns:
            Number of bytes read; 0 at end of stream.
        """
        if self._cancel_check is not None:
            self._cancel_check()
        view = memoryview(buffer).cast("B")
        limit = min(len(view), self._chunk_size)
        if limit == 0:
            return 0
        data = self._source.read(limit)
        n = len(data)
        view[:n] = data
        self._bytes_read += n
        return n

    def iter_chunks(self) -> Iterator[bytes]:
        """Yield the body chunk by chunk.

        With an ``expected_length`` exactly that many bytes are yielded;
        short reads are retried and an early EOF raises.

        Raises:
            TransportError: The source ended before ``expected_length``.
        """
        remaining = self._expected_length
        while remaining is None or remaining > 0:
            size = self._chunk_size
            if remaining is not None:
                size = min(size, remaining)
            chunk = self.read(size)
            if not chunk:
                if remaining is not None:
                    raise TransportError(
                        f"Body ended after {self._bytes_read} of "
                        f"{self._expected_length} bytes"
                    )
                return
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk

    def drain(self) -> bytes:
        """Read the whole (length-checked) body into memory."""
        return b"".join(self.iter_chunks())
