# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""S3 request and response bodies.

Frozen dataclasses for the XML documents the client exchanges, with
``parse_*`` functions for response bodies and ``build_*`` functions for
request bodies.  Parsing is namespace-agnostic (S3 answers with the
``2006-03-01`` default namespace; some compatible servers omit it).

Any body that does not match its schema raises :class:`DecodeError`.
"""

from __future__ import annotations

import email.utils
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from s3mover.errors import DecodeError


S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


class _SchemaError(ValueError):
    """A required element is missing or malformed."""


# ---------------------------------------------------------------------------
# XML helpers
# ---------------------------------------------------------------------------


@contextmanager
def _decoding(what: str, body: bytes, status: int) -> Iterator[None]:
    """Turn parse and schema failures into DecodeError."""
    try:
        yield
    except ET.ParseError as exc:
        raise DecodeError(status, f"malformed {what} ({exc})", body) from exc
    except ValueError as exc:
        raise DecodeError(status, f"invalid {what}: {exc}", body) from exc


def _parse_root(body: bytes, root_name: str) -> ET.Element:
    root = ET.fromstring(body)
    for element in root.iter():
        element.tag = element.tag.rsplit("}", 1)[-1]
    if root.tag != root_name:
        raise _SchemaError(f"expected <{root_name}>, got <{root.tag}>")
    return root


def _text(element: ET.Element, name: str, default: str = "") -> str:
    child = element.find(name)
    if child is None or child.text is None:
        return default
    return child.text


def _required(element: ET.Element, name: str) -> str:
    value = _text(element, name).strip()
    if not value:
        raise _SchemaError(f"<{element.tag}> is missing <{name}>")
    return value


def _int(element: ET.Element, name: str, default: int = 0) -> int:
    value = _text(element, name).strip()
    return int(value) if value else default


def _optional_int(element: ET.Element, name: str) -> int | None:
    value = _text(element, name).strip()
    return int(value) if value else None


def _bool(element: ET.Element, name: str) -> bool:
    return _text(element, name).strip().lower() == "true"


def _timestamp(element: ET.Element, name: str) -> datetime | None:
    value = _text(element, name).strip()
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # Some servers omit the offset; S3 timestamps are always UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _owner(element: ET.Element | None) -> Owner | None:
    if element is None:
        return None
    return Owner(
        id=_text(element, "ID"), display_name=_text(element, "DisplayName")
    )


def _common_prefixes(root: ET.Element) -> list[str]:
    return [
        _text(cp, "Prefix")
        for cp in root.findall("CommonPrefixes")
        if _text(cp, "Prefix")
    ]


def _to_bytes(root: ET.Element) -> bytes:
    return ET.tostring(root, encoding="utf-8")


# ---------------------------------------------------------------------------
# Shared types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Owner:
    id: str
    display_name: str = ""


# ---------------------------------------------------------------------------
# Object metadata (from response headers)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObjectHead:
    """Object metadata returned by HeadObject.

    Attributes:
        size: Content-Length in bytes.
        etag: ETag header, verbatim.
        content_type: Content-Type header.
        version_id: ``x-amz-version-id`` header.
        last_modified: Parsed Last-Modified header.
    """

    size: int
    etag: str | None = None
    content_type: str | None = None
    version_id: str | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], status: int = 200
    ) -> ObjectHead:
        """Build from lowercased response headers.

        Raises:
            DecodeError: Content-Length missing or not an integer.
        """
        raw_length = headers.get("content-length", "")
        try:
            size = int(raw_length)
        except ValueError as exc:
            raise DecodeError(
                status, f"invalid Content-Length {raw_length!r}"
            ) from exc
        if size < 0:
            raise DecodeError(status, f"negative Content-Length {size}")

        last_modified = None
        raw_modified = headers.get("last-modified")
        if raw_modified:
            try:
                last_modified = email.utils.parsedate_to_datetime(raw_modified)
            except (TypeError, ValueError):
                last_modified = None

        return cls(
            size=size,
            etag=headers.get("etag"),
            content_type=headers.get("content-type"),
            version_id=headers.get("x-amz-version-id"),
            last_modified=last_modified,
        )


@dataclass(frozen=True)
class PutObjectResult:
    etag: str | None
    version_id: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> PutObjectResult:
        return cls(
            etag=headers.get("etag"),
            version_id=headers.get("x-amz-version-id"),
        )


# ---------------------------------------------------------------------------
# ListBuckets / ListObjectsV2
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Bucket:
    name: str
    creation_date: datetime | None = None


@dataclass(frozen=True)
class ListBucketsResult:
    buckets: list[Bucket] = field(default_factory=list)
    owner: Owner | None = None


def build_create_bucket_configuration(region: str) -> bytes:
    """Build a CreateBucket body; empty for the default region."""
    if not region or region == "us-east-1":
        return b""
    root = ET.Element("CreateBucketConfiguration", xmlns=S3_NAMESPACE)
    ET.SubElement(root, "LocationConstraint").text = region
    return _to_bytes(root)


def parse_list_buckets(body: bytes, status: int = 200) -> ListBucketsResult:
    with _decoding("ListAllMyBucketsResult", body, status):
        root = _parse_root(body, "ListAllMyBucketsResult")
        buckets = [
            Bucket(
                name=_required(b, "Name"),
                creation_date=_timestamp(b, "CreationDate"),
            )
            for b in root.findall("Buckets/Bucket")
        ]
        return ListBucketsResult(
            buckets=buckets, owner=_owner(root.find("Owner"))
        )


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    etag: str = ""
    last_modified: datetime | None = None
    storage_class: str = ""


@dataclass(frozen=True)
class ListObjectsResult:
    name: str
    prefix: str = ""
    key_count: int = 0
    max_keys: int = 0
    is_truncated: bool = False
    continuation_token: str = ""
    next_continuation_token: str = ""
    contents: list[ObjectInfo] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)


def parse_list_objects(body: bytes, status: int = 200) -> ListObjectsResult:
    with _decoding("ListBucketResult", body, status):
        root = _parse_root(body, "ListBucketResult")
        contents = [
            ObjectInfo(
                key=_required(c, "Key"),
                size=_int(c, "Size"),
                etag=_text(c, "ETag"),
                last_modified=_timestamp(c, "LastModified"),
                storage_class=_text(c, "StorageClass"),
            )
            for c in root.findall("Contents")
        ]
        return ListObjectsResult(
            name=_text(root, "Name"),
            prefix=_text(root, "Prefix"),
            key_count=_int(root, "KeyCount", default=len(contents)),
            max_keys=_int(root, "MaxKeys"),
            is_truncated=_bool(root, "IsTruncated"),
            continuation_token=_text(root, "ContinuationToken"),
            next_continuation_token=_text(root, "NextContinuationToken"),
            contents=contents,
            common_prefixes=_common_prefixes(root),
        )


# ---------------------------------------------------------------------------
# DeleteObjects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeletedObject:
    key: str
    version_id: str = ""
    delete_marker: bool = False


@dataclass(frozen=True)
class DeleteErrorEntry:
    key: str
    code: str
    message: str = ""
    version_id: str = ""


@dataclass(frozen=True)
class DeleteResult:
    deleted: list[DeletedObject] = field(default_factory=list)
    errors: list[DeleteErrorEntry] = field(default_factory=list)


def build_delete_objects(keys: Iterable[str], *, quiet: bool = False) -> bytes:
    """Build a ``<Delete>`` request body."""
    root = ET.Element("Delete", xmlns=S3_NAMESPACE)
    if quiet:
        ET.SubElement(root, "Quiet").text = "true"
    for key in keys:
        obj = ET.SubElement(root, "Object")
        ET.SubElement(obj, "Key").text = key
    return _to_bytes(root)


def parse_delete_result(body: bytes, status: int = 200) -> DeleteResult:
    with _decoding("DeleteResult", body, status):
        root = _parse_root(body, "DeleteResult")
        return DeleteResult(
            deleted=[
                DeletedObject(
                    key=_text(d, "Key"),
                    version_id=_text(d, "VersionId"),
                    delete_marker=_bool(d, "DeleteMarker"),
                )
                for d in root.findall("Deleted")
            ],
            errors=[
                DeleteErrorEntry(
                    key=_text(e, "Key"),
                    code=_text(e, "Code"),
                    message=_text(e, "Message"),
                    version_id=_text(e, "VersionId"),
                )
                for e in root.findall("Error")
            ],
        )


# ---------------------------------------------------------------------------
# Multipart upload
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InitiateMultipartUploadResult:
    bucket: str
    key: str
    upload_id: str


def parse_initiate_multipart_upload(
    body: bytes, status: int = 200
) -> InitiateMultipartUploadResult:
    with _decoding("InitiateMultipartUploadResult", body, status):
        root = _parse_root(body, "InitiateMultipartUploadResult")
        return InitiateMultipartUploadResult(
            bucket=_text(root, "Bucket"),
            key=_text(root, "Key"),
            upload_id=_required(root, "UploadId"),
        )


@dataclass(frozen=True)
class CompletedPart:
    """A part as listed in CompleteMultipartUpload.

    Attributes:
        part_number: 1-based part number.
        etag: ETag exactly as returned by UploadPart.
    """

    part_number: int
    etag: str


def sort_completed_parts(parts: Iterable[CompletedPart]) -> list[CompletedPart]:
    """Sort parts ascending and check they form ``1..n`` exactly once.

    Raises:
        ValueError: Empty list, gap, duplicate, or missing ETag.
    """
    ordered = sorted(parts, key=lambda p: p.part_number)
    if not ordered:
        raise ValueError("CompleteMultipartUpload needs at least one part")
    for expected, part in enumerate(ordered, start=1):
        if part.part_number != expected:
            raise ValueError(
                f"Part numbers must be 1..{len(ordered)} without gaps or "
                f"duplicates; found {part.part_number} at position {expected}"
            )
        if not part.etag:
            raise ValueError(f"Part {part.part_number} has no ETag")
    return ordered


def build_complete_multipart_upload(parts: Iterable[CompletedPart]) -> bytes:
    """Build the ``<CompleteMultipartUpload>`` body (parts ascending)."""
    root = ET.Element("CompleteMultipartUpload", xmlns=S3_NAMESPACE)
    for part in sort_completed_parts(parts):
        element = ET.SubElement(root, "Part")
        ET.SubElement(element, "PartNumber").text = str(part.part_number)
        ET.SubElement(element, "ETag").text = part.etag
    return _to_bytes(root)


@dataclass(frozen=True)
class CompleteMultipartUploadResult:
    location: str
    bucket: str
    key: str
    etag: str
    version_id: str | None = None


def parse_complete_multipart_upload(
    body: bytes, status: int = 200, *, version_id: str | None = None
) -> CompleteMultipartUploadResult:
    with _decoding("CompleteMultipartUploadResult", body, status):
        root = _parse_root(body, "CompleteMultipartUploadResult")
        return CompleteMultipartUploadResult(
            location=_text(root, "Location"),
            bucket=_text(root, "Bucket"),
            key=_text(root, "Key"),
            etag=_text(root, "ETag"),
            version_id=version_id,
        )


@dataclass(frozen=True)
class Part:
    part_number: int
    etag: str
    size: int = 0
    last_modified: datetime | None = None


@dataclass(frozen=True)
class ListPartsResult:
    bucket: str
    key: str
    upload_id: str
    part_number_marker: int = 0
    next_part_number_marker: int = 0
    max_parts: int = 0
    is_truncated: bool = False
    storage_class: str = ""
    parts: list[Part] = field(default_factory=list)


def parse_list_parts(body: bytes, status: int = 200) -> ListPartsResult:
    with _decoding("ListPartsResult", body, status):
        root = _parse_root(body, "ListPartsResult")
        return ListPartsResult(
            bucket=_text(root, "Bucket"),
            key=_text(root, "Key"),
            upload_id=_text(root, "UploadId"),
            part_number_marker=_int(root, "PartNumberMarker"),
            next_part_number_marker=_int(root, "NextPartNumberMarker"),
            max_parts=_int(root, "MaxParts"),
            is_truncated=_bool(root, "IsTruncated"),
            storage_class=_text(root, "StorageClass"),
            parts=[
                Part(
                    part_number=int(_required(p, "PartNumber")),
                    etag=_text(p, "ETag"),
                    size=_int(p, "Size"),
                    last_modified=_timestamp(p, "LastModified"),
                )
                for p in root.findall("Part")
            ],
        )


@dataclass(frozen=True)
class MultipartUpload:
    """An in-progress multipart upload as listed by the server."""

    key: str
    upload_id: str
    initiated: datetime | None = None
    storage_class: str = ""
    initiator: Owner | None = None


@dataclass(frozen=True)
class ListMultipartUploadsResult:
    bucket: str
    key_marker: str = ""
    upload_id_marker: str = ""
    next_key_marker: str = ""
    next_upload_id_marker: str = ""
    prefix: str = ""
    delimiter: str = ""
    max_uploads: int | None = None
    is_truncated: bool = False
    uploads: list[MultipartUpload] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)


def parse_list_multipart_uploads(
    body: bytes, status: int = 200
) -> ListMultipartUploadsResult:
    with _decoding("ListMultipartUploadsResult", body, status):
        root = _parse_root(body, "ListMultipartUploadsResult")
        uploads = [
            MultipartUpload(
                key=_required(u, "Key"),
                upload_id=_required(u, "UploadId"),
                initiated=_timestamp(u, "Initiated"),
                storage_class=_text(u, "StorageClass"),
                initiator=_owner(u.find("Initiator")),
            )
            for u in root.findall("Upload")
        ]
        return ListMultipartUploadsResult(
            bucket=_text(root, "Bucket"),
            key_marker=_text(root, "KeyMarker"),
            upload_id_marker=_text(root, "UploadIdMarker"),
            next_key_marker=_text(root, "NextKeyMarker"),
            next_upload_id_marker=_text(root, "NextUploadIdMarker"),
            prefix=_text(root, "Prefix"),
            delimiter=_text(root, "Delimiter"),
            max_uploads=_optional_int(root, "MaxUploads"),
            is_truncated=_bool(root, "IsTruncated"),
            uploads=uploads,
            common_prefixes=_common_prefixes(root),
        )


def is_error_document(body: bytes) -> bool:
    """True if a (2xx) body is actually an ``<Error>`` document.

    CompleteMultipartUpload may answer 200 and report failure in the body.
    """
    rest = body.lstrip()
    if rest.startswith(b"<?xml"):
        end = rest.find(b"?>")
        if end != -1:
            rest = rest[end + 2 :].lstrip()
    return rest.startswith((b"<Error>", b"<Error "))

