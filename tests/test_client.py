# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for S3Client round trips against the in-memory S3."""

import base64
import hashlib
import io

import pytest

from s3mover.client import S3Client
from s3mover.config import PayloadPolicy
from s3mover.errors import (
    DecodeError,
    ProtocolError,
    TransportError,
)
from s3mover.models import CompletedPart
from s3mover.signing import (
    EMPTY_SHA256,
    SIGNED_HEADERS_WITH_TOKEN,
    UNSIGNED_PAYLOAD,
    sign,
)
from tests.conftest import FIXED_NOW, make_config
from tests.fake_s3 import FakeS3, error_xml
from tests.vectors import ACCESS_KEY, SECRET_KEY


class TestRequestSigning:
    """Tests for the headers attached to every request."""

    def test_signed_headers_and_fixed_date(self, client: S3Client) -> None:
        """Host, date and payload hash are set and signed."""
        request = client.new_request("GET", "bucket", "a b.txt")
        assert request.url == "https://bucket.s3.test.local/a%20b.txt"
        assert request.headers["Host"] == "bucket.s3.test.local"
        assert request.headers["x-amz-date"] == "20260301T120000Z"
        assert request.headers["x-amz-content-sha256"] == EMPTY_SHA256
        assert "Content-Length" not in request.headers

        expected = sign(
            "GET",
            "bucket.s3.test.local",
            "/a%20b.txt",
            "",
            EMPTY_SHA256,
            "eu-central-1",
            ACCESS_KEY,
            SECRET_KEY,
            FIXED_NOW,
        )
        assert request.headers["Authorization"] == expected

    def test_credential_scope(self, client: S3Client) -> None:
        """The credential scope uses the signing date and region."""
        request = client.new_request("GET")
        assert request.headers["Authorization"].startswith(
            "AWS4-HMAC-SHA256 Credential="
            f"{ACCESS_KEY}/20260301/eu-central-1/s3/aws4_request, "
        )

    def test_extra_headers_cannot_override_signed(
        self, client: S3Client
    ) -> None:
        """Caller headers are kept but never replace signed ones."""
        request = client.new_request(
            "GET",
            "bucket",
            "k",
            headers={"Range": "bytes=0-1", "x-amz-date": "19700101T000000Z"},
        )
        assert request.headers["Range"] == "bytes=0-1"
        assert request.headers["x-amz-date"] == "20260301T120000Z"
        assert request.headers["User-Agent"] == "s3mover"

    def test_header_case_does_not_bypass_signed(
        self, client: S3Client
    ) -> None:
        """Signed headers win whatever case the caller used."""
        request = client.new_request(
            "GET",
            "bucket",
            "k",
            headers={
                "Host": "elsewhere.test",
                "X-Amz-Date": "19700101T000000Z",
                "AUTHORIZATION": "forged",
            },
        )
        names = [name.lower() for name in request.headers]
        assert names.count("host") == 1
        assert names.count("x-amz-date") == 1
        assert names.count("authorization") == 1
        assert request.headers["Host"] == "bucket.s3.test.local"
        assert request.headers["x-amz-date"] == "20260301T120000Z"
        assert request.headers["Authorization"].startswith("AWS4-HMAC-SHA256")

    def test_session_token(self, fake_s3: FakeS3) -> None:
        """A session token is sent and covered by the signature."""
        client = S3Client(
            make_config(session_token="token/value"),
            fake_s3,
            clock=lambda: FIXED_NOW,
        )
        request = client.new_request("GET", "bucket")
        assert request.headers["x-amz-security-token"] == "token/value"
        assert (
            f"SignedHeaders={SIGNED_HEADERS_WITH_TOKEN}"
            in request.headers["Authorization"]
        )

    def test_put_declares_length(self, client: S3Client) -> None:
        """PUT and POST always carry Content-Length, even when empty."""
        request = client.new_request("PUT", "bucket", "k")
        assert request.headers["Content-Length"] == "0"

    def test_unsigned_stream(self, client: S3Client) -> None:
        """Streamed bodies are signed as UNSIGNED-PAYLOAD by default."""
        request = client.new_stream_request(
            "PUT", "bucket", "k", io.BytesIO(b"abcdef"), 6
        )
        assert request.headers["x-amz-content-sha256"] == UNSIGNED_PAYLOAD
        assert request.headers["Content-Length"] == "6"
        assert not isinstance(request.content, bytes)
        assert b"".join(request.content) == b"abcdef"

    def test_signed_stream(self, fake_s3: FakeS3) -> None:
        """The SIGNED policy buffers and hashes the body."""
        client = S3Client(
            make_config(payload_policy=PayloadPolicy.SIGNED),
            fake_s3,
            clock=lambda: FIXED_NOW,
        )
        request = client.new_stream_request(
            "PUT", "bucket", "k", io.BytesIO(b"abcdefgh"), 6
        )
        assert request.content == b"abcdef"
        assert (
            request.headers["x-amz-content-sha256"]
            == hashlib.sha256(b"abcdef").hexdigest()
        )

    def test_repr_hides_secrets(self, client: S3Client) -> None:
        """The client repr shows the endpoint, not credentials."""
        assert SECRET_KEY not in repr(client)
        assert "s3.test.local" in repr(client)


class TestBucketOperations:
    """Tests for bucket-level calls."""

    def test_create_and_list(self, client: S3Client, fake_s3: FakeS3) -> None:
        """A created bucket shows up in the listing."""
        client.create_bucket("photos")
        request = fake_s3.calls("PUT")[0]
        assert b"<LocationConstraint>eu-central-1" in request.body
        result = client.list_buckets()
        assert [b.name for b in result.buckets] == ["photos"]
        assert result.owner is not None

    def test_list_objects(self, client: S3Client, fake_s3: FakeS3) -> None:
        """ListObjectsV2 filters by prefix."""
        fake_s3.put("b", "logs/1", b"a")
        fake_s3.put("b", "logs/2", b"bb")
        fake_s3.put("b", "other", b"c")
        result = client.list_objects_v2("b", prefix="logs/")
        assert [(o.key, o.size) for o in result.contents] == [
            ("logs/1", 1),
            ("logs/2", 2),
        ]
        assert fake_s3.requests[-1].query["list-type"] == "2"

    def test_missing_bucket(self, client: S3Client) -> None:
        """Errors from the server become ProtocolError."""
        with pytest.raises(ProtocolError) as exc_info:
            client.list_objects_v2("nope")
        assert exc_info.value.code == "NoSuchBucket"
        assert exc_info.value.status == 404
        assert exc_info.value.request_id == "REQ123"


class TestObjectOperations:
    """Tests for single-object calls."""

    def test_put_get_head_delete(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """An object can be written, read, inspected and removed."""
        fake_s3.put("b", "seed", b"")
        result = client.put_object("b", "dir/k", b"hello", "text/plain")
        assert result.etag == fake_s3.get("b", "dir/k").etag
        assert client.get_object("b", "dir/k") == b"hello"

        head = client.head_object("b", "dir/k")
        assert head.size == 5
        assert head.content_type == "text/plain"
        assert head.etag == result.etag

        client.delete_object("b", "dir/k")
        assert "dir/k" not in fake_s3.buckets["b"]

    def test_head_missing_is_not_found(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """HEAD on a missing key raises NotFound despite the empty body."""
        fake_s3.put("b", "other", b"")
        with pytest.raises(ProtocolError) as exc_info:
            client.head_object("b", "missing")
        assert exc_info.value.code == "NotFound"
        assert exc_info.value.status == 404

    def test_get_object_stream(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """The streaming body can be read incrementally."""
        fake_s3.put("b", "k", b"0123456789")
        with client.get_object_stream("b", "k") as response:
            assert response.body.read(4) == b"0123"
            assert response.read() == b"456789"

    def test_get_object_range(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """A range read returns exactly the inclusive range."""
        fake_s3.put("b", "k", b"0123456789")
        with client.get_object_range("b", "k", 3, 6) as response:
            assert response.status_code == 206
            assert response.read() == b"3456"
        assert fake_s3.requests[-1].headers["Range"] == "bytes=3-6"

    @pytest.mark.parametrize("start,end", [(-1, 3), (5, 4)])
    def test_invalid_range(
        self, client: S3Client, start: int, end: int
    ) -> None:
        """Negative or inverted ranges are rejected before sending."""
        with pytest.raises(ValueError):
            client.get_object_range("b", "k", start, end)

    def test_put_object_stream(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """Exactly content_length bytes of the stream are uploaded."""
        fake_s3.put("b", "seed", b"")
        client.put_object_stream(
            "b", "big", io.BytesIO(b"x" * 10_000 + b"extra"), 10_000
        )
        assert fake_s3.get("b", "big").data == b"x" * 10_000

    def test_short_stream_is_transport_error(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """A stream shorter than the declared length fails the send."""
        fake_s3.put("b", "seed", b"")
        with pytest.raises(TransportError, match="3 of 10"):
            client.put_object_stream("b", "k", io.BytesIO(b"abc"), 10)
        assert "k" not in fake_s3.buckets["b"]

    def test_signed_policy_hash_verified(self, fake_s3: FakeS3) -> None:
        """Signed stream uploads pass the server's hash check."""
        client = S3Client(
            make_config(payload_policy=PayloadPolicy.SIGNED),
            fake_s3,
            clock=lambda: FIXED_NOW,
        )
        fake_s3.put("b", "seed", b"")
        client.put_object_stream("b", "k", io.BytesIO(b"signed body"), 11)
        request = fake_s3.requests[-1]
        assert request.headers["x-amz-content-sha256"] == (
            hashlib.sha256(b"signed body").hexdigest()
        )
        assert fake_s3.get("b", "k").data == b"signed body"

    def test_transport_failure(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """Executor failures propagate as TransportError."""
        fake_s3.fail("GET", exc=TransportError("connection reset"))
        with pytest.raises(TransportError, match="connection reset"):
            client.get_object("b", "k")

    def test_garbled_error_is_decode_error(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """An unparseable error body is a DecodeError."""
        fake_s3.fail("GET", status=502, body=b"<html>Bad Gateway</html>")
        with pytest.raises(DecodeError) as exc_info:
            client.get_object("b", "k")
        assert exc_info.value.status == 502


class TestDeleteObjects:
    """Tests for batch delete."""

    def test_content_md5_and_result(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """The body digest is sent and per-key results are decoded."""
        fake_s3.put("b", "a", b"1")
        result = client.delete_objects("b", ["a", "missing"])
        request = fake_s3.requests[-1]
        digest = base64.b64encode(hashlib.md5(request.body).digest())
        assert request.headers["Content-MD5"] == digest.decode()
        assert "delete" in request.query
        assert [d.key for d in result.deleted] == ["a"]
        assert [e.key for e in result.errors] == ["missing"]

    @pytest.mark.parametrize("count", [0, 1001])
    def test_key_count_limits(self, client: S3Client, count: int) -> None:
        """Between 1 and 1000 keys are accepted."""
        with pytest.raises(ValueError):
            client.delete_objects("b", [f"k{i}" for i in range(count)])


class TestMultipartOperations:
    """Tests for the multipart calls."""

    def test_full_round_trip(self, client: S3Client, fake_s3: FakeS3) -> None:
        """Create, upload parts, list parts and complete."""
        fake_s3.put("b", "seed", b"")
        created = client.create_multipart_upload("b", "big", "text/plain")
        assert created.key == "big"

        etag2 = client.upload_part(
            "b", "big", created.upload_id, 2, io.BytesIO(b"world"), 5
        )
        etag1 = client.upload_part(
            "b", "big", created.upload_id, 1, io.BytesIO(b"hello "), 6
        )
        request = fake_s3.calls("PUT", "uploadId")[0]
        assert request.query == {
            "partNumber": "2",
            "uploadId": created.upload_id,
        }

        listed = client.list_parts("b", "big", created.upload_id)
        assert [(p.part_number, p.etag) for p in listed.parts] == [
            (1, etag1),
            (2, etag2),
        ]

        result = client.complete_multipart_upload(
            "b",
            "big",
            created.upload_id,
            [CompletedPart(2, etag2), CompletedPart(1, etag1)],
        )
        assert fake_s3.completed == [[1, 2]]
        assert result.etag.endswith('-2"')
        stored = fake_s3.get("b", "big")
        assert stored.data == b"hello world"
        assert stored.content_type == "text/plain"

    def test_list_parts_pagination(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """max_parts and the marker page through parts."""
        fake_s3.put("b", "seed", b"")
        upload_id = client.create_multipart_upload("b", "k").upload_id
        for number in (1, 2, 3):
            client.upload_part(
                "b", "k", upload_id, number, io.BytesIO(b"x"), 1
            )
        page = client.list_parts("b", "k", upload_id, max_parts=2)
        assert page.is_truncated
        assert [p.part_number for p in page.parts] == [1, 2]
        rest = client.list_parts(
            "b",
            "k",
            upload_id,
            part_number_marker=page.next_part_number_marker,
        )
        assert not rest.is_truncated
        assert [p.part_number for p in rest.parts] == [3]

    def test_list_uploads_pagination(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """Key and upload id markers page through uploads."""
        first = fake_s3.add_upload("b", "a")
        second = fake_s3.add_upload("b", "b")
        page = client.list_multipart_uploads("b", max_uploads=1)
        assert page.is_truncated
        assert [u.upload_id for u in page.uploads] == [first]
        rest = client.list_multipart_uploads(
            "b",
            key_marker=page.next_key_marker,
            upload_id_marker=page.next_upload_id_marker,
        )
        assert [u.upload_id for u in rest.uploads] == [second]

    def test_upload_part_number_range(self, client: S3Client) -> None:
        """Part numbers outside 1..10000 are rejected before sending."""
        with pytest.raises(ValueError):
            client.upload_part("b", "k", "u", 0, io.BytesIO(b""), 0)
        with pytest.raises(ValueError):
            client.upload_part("b", "k", "u", 10_001, io.BytesIO(b""), 0)

    def test_complete_error_in_200_body(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """A 200 response carrying <Error> is raised as ProtocolError."""
        fake_s3.put("b", "seed", b"")
        upload_id = client.create_multipart_upload("b", "k").upload_id
        etag = client.upload_part(
            "b", "k", upload_id, 1, io.BytesIO(b"x"), 1
        )
        fake_s3.fail(
            "POST",
            query_key="uploadId",
            status=200,
            body=error_xml("InternalError", "We encountered an error"),
        )
        with pytest.raises(ProtocolError) as exc_info:
            client.complete_multipart_upload(
                "b", "k", upload_id, [CompletedPart(1, etag)]
            )
        assert exc_info.value.code == "InternalError"
        assert exc_info.value.status == 200

    def test_complete_error_after_padding(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """An <Error> preceded by keep-alive whitespace is still raised."""
        fake_s3.put("b", "seed", b"")
        upload_id = client.create_multipart_upload("b", "k").upload_id
        etag = client.upload_part(
            "b", "k", upload_id, 1, io.BytesIO(b"x"), 1
        )
        fake_s3.fail(
            "POST",
            query_key="uploadId",
            status=200,
            body=b'<?xml version="1.0" encoding="UTF-8"?>\n'
            + b" " * 300
            + b"<Error><Code>SlowDown</Code><Message>m</Message></Error>",
        )
        with pytest.raises(ProtocolError) as exc_info:
            client.complete_multipart_upload(
                "b", "k", upload_id, [CompletedPart(1, etag)]
            )
        assert exc_info.value.code == "SlowDown"

    def test_complete_rejects_gaps(self, client: S3Client) -> None:
        """Part lists with gaps never reach the server."""
        with pytest.raises(ValueError):
            client.complete_multipart_upload(
                "b",
                "k",
                "u",
                [CompletedPart(1, '"a"'), CompletedPart(3, '"c"')],
            )

    def test_abort(self, client: S3Client, fake_s3: FakeS3) -> None:
        """Abort removes the upload."""
        upload_id = fake_s3.add_upload("b", "k")
        client.abort_multipart_upload("b", "k", upload_id)
        assert upload_id not in fake_s3.uploads

    def test_abort_unknown_upload(
        self, client: S3Client, fake_s3: FakeS3
    ) -> None:
        """Aborting an unknown upload is NoSuchUpload."""
        fake_s3.put("b", "seed", b"")
        with pytest.raises(ProtocolError) as exc_info:
            client.abort_multipart_upload("b", "k", "nope")
        assert exc_info.value.code == "NoSuchUpload"
