"""Tests for S3 storage client."""

import io
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from commonblob.common.config import MIB, StorageSettings
from commonblob.common.context import Context
from commonblob.infra.storage.client import SignedURLOptions, WriteOptions
from commonblob.infra.storage.errors import (
    AlreadyExistsError,
    BackendFailureError,
    CanceledError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)
from commonblob.infra.storage.s3_client import S3StorageClient


def _client_error(code: str, status: int, operation: str = "GetObject") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class _Body:
    """Stand-in for botocore's StreamingBody."""

    def __init__(self, data: bytes) -> None:
        self._stream = io.BytesIO(data)
        self.closed = False

    def read(self, amt=None):
        return self._stream.read(amt)

    def close(self):
        self.closed = True


class TestS3StorageClient:
    """Test S3StorageClient implementation."""

    @pytest.fixture
    def mock_s3(self):
        """Mock boto3 S3 client."""
        mock_client = MagicMock()
        with patch.object(S3StorageClient, "_build_client", return_value=mock_client):
            yield mock_client

    @pytest.fixture
    def settings(self):
        return StorageSettings(
            BUCKET_PROVIDER="aws",
            BUCKET_NAME="test-bucket",
            IS_TESTING=True,
            AWS_S3_ENDPOINT="http://localhost:4572",
            AWS_REGION="us-west-2",
            AWS_ACCESS_KEY_ID="test-key",
            AWS_SECRET_ACCESS_KEY="test-secret",
            S3_PART_SIZE_BYTES=5 * MIB,
            LIST_PAGE_SIZE=2,
        )

    @pytest.fixture
    def client(self, mock_s3, settings):
        """Create S3StorageClient with mocked boto3."""
        return S3StorageClient(settings=settings)

    @pytest.fixture
    def ctx(self):
        return Context.background()

    def test_build_client_uses_path_style_in_test_mode(self, settings):
        with patch("commonblob.infra.storage.s3_client.boto3.client") as factory:
            S3StorageClient(settings=settings)

        kwargs = factory.call_args[1]
        assert factory.call_args[0] == ("s3",)
        assert kwargs["endpoint_url"] == "http://localhost:4572"
        assert kwargs["region_name"] == "us-west-2"
        assert kwargs["config"].s3 == {"addressing_style": "path"}
        assert kwargs["config"].retries == {"total_max_attempts": 1, "mode": "standard"}

    def test_create_bucket_sets_location(self, client, mock_s3, ctx):
        client.create_bucket(ctx)

        mock_s3.create_bucket.assert_called_once_with(
            Bucket="test-bucket",
            CreateBucketConfiguration={"LocationConstraint": "us-west-2"},
        )

    def test_create_bucket_in_default_region(self, mock_s3, settings, ctx):
        east = StorageSettings(**{**settings.__dict__, "AWS_REGION": "us-east-1"})
        S3StorageClient(settings=east).create_bucket(ctx)

        mock_s3.create_bucket.assert_called_once_with(Bucket="test-bucket")

    @pytest.mark.parametrize("code", ["BucketAlreadyOwnedByYou", "BucketAlreadyExists"])
    def test_create_bucket_already_exists(self, client, mock_s3, ctx, code):
        mock_s3.create_bucket.side_effect = _client_error(code, 409, "CreateBucket")

        with pytest.raises(AlreadyExistsError):
            client.create_bucket(ctx)

    def test_write(self, client, mock_s3, ctx):
        client.write(
            ctx,
            "prefix/a.json",
            b'{"key": "value"}',
            WriteOptions(content_type="application/json", metadata={"owner": "me"}),
        )

        mock_s3.put_object.assert_called_once_with(
            Bucket="test-bucket",
            Key="prefix/a.json",
            Body=b'{"key": "value"}',
            ContentType="application/json",
            Metadata={"owner": "me"},
        )

    def test_write_rejected(self, client, mock_s3, ctx):
        mock_s3.put_object.side_effect = _client_error("AccessDenied", 403, "PutObject")

        with pytest.raises(PermissionDeniedError, match="Failed to put object"):
            client.write(ctx, "prefix/a", b"data")

    def test_write_network_failure_is_transient(self, client, mock_s3, ctx):
        mock_s3.put_object.side_effect = EndpointConnectionError(
            endpoint_url="http://localhost:4572"
        )

        with pytest.raises(TransientError):
            client.write(ctx, "prefix/a", b"data")

    def test_get(self, client, mock_s3, ctx):
        body = _Body(b"hello")
        mock_s3.get_object.return_value = {"Body": body}

        assert client.get(ctx, "prefix/a") == b"hello"
        mock_s3.get_object.assert_called_once_with(Bucket="test-bucket", Key="prefix/a")
        assert body.closed

    def test_get_missing(self, client, mock_s3, ctx):
        mock_s3.get_object.side_effect = _client_error("NoSuchKey", 404)

        with pytest.raises(NotFoundError):
            client.get(ctx, "prefix/missing")

    def test_range_reader_sends_range_header(self, client, mock_s3, ctx):
        mock_s3.get_object.return_value = {"Body": _Body(b"56789")}

        with client.new_range_reader(ctx, "prefix/digits", 5, 5) as reader:
            assert reader.read() == b"56789"

        mock_s3.get_object.assert_called_once_with(
            Bucket="test-bucket", Key="prefix/digits", Range="bytes=5-9"
        )

    def test_range_reader_open_ended(self, client, mock_s3, ctx):
        mock_s3.get_object.return_value = {"Body": _Body(b"3456789")}

        with client.new_range_reader(ctx, "prefix/digits", 3, -1) as reader:
            reader.read()

        assert mock_s3.get_object.call_args[1]["Range"] == "bytes=3-"

    def test_range_at_end_is_empty(self, client, mock_s3, ctx):
        mock_s3.get_object.side_effect = _client_error("InvalidRange", 416)
        mock_s3.head_object.return_value = {
            "ContentLength": 10,
            "LastModified": datetime.now(timezone.utc),
        }

        with client.new_range_reader(ctx, "prefix/digits", 10, 5) as reader:
            assert reader.read() == b""

    def test_range_beyond_end_fails(self, client, mock_s3, ctx):
        mock_s3.get_object.side_effect = _client_error("InvalidRange", 416)
        mock_s3.head_object.return_value = {
            "ContentLength": 10,
            "LastModified": datetime.now(timezone.utc),
        }

        with pytest.raises(InvalidArgumentError, match="beyond the end"):
            client.new_range_reader(ctx, "prefix/digits", 11, 5)

    def test_range_negative_offset(self, client, ctx):
        with pytest.raises(InvalidArgumentError):
            client.new_range_reader(ctx, "prefix/digits", -1, 5)

    def test_small_writer_uses_single_put(self, client, mock_s3, ctx):
        writer = client.new_writer(ctx, "prefix/stream")
        writer.write(b"abc")
        writer.write(b"def")
        writer.close()

        mock_s3.put_object.assert_called_once_with(
            Bucket="test-bucket", Key="prefix/stream", Body=b"abcdef"
        )
        mock_s3.create_multipart_upload.assert_not_called()

    def test_large_writer_uses_multipart_upload(self, client, mock_s3, ctx):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "upload-1"}
        mock_s3.upload_part.side_effect = [{"ETag": '"e1"'}, {"ETag": '"e2"'}]
        part = b"x" * (5 * MIB)

        writer = client.new_writer(ctx, "prefix/big")
        writer.write(part[:MIB])
        writer.write(part[MIB:])
        writer.write(b"tail")
        mock_s3.complete_multipart_upload.assert_not_called()
        writer.close()

        assert mock_s3.upload_part.call_count == 2
        first, second = mock_s3.upload_part.call_args_list
        assert first[1]["PartNumber"] == 1
        assert len(first[1]["Body"]) == 5 * MIB
        assert second[1]["Body"] == b"tail"
        mock_s3.complete_multipart_upload.assert_called_once_with(
            Bucket="test-bucket",
            Key="prefix/big",
            UploadId="upload-1",
            MultipartUpload={
                "Parts": [
                    {"ETag": '"e1"', "PartNumber": 1},
                    {"ETag": '"e2"', "PartNumber": 2},
                ]
            },
        )
        mock_s3.put_object.assert_not_called()

    def test_writer_aborts_multipart_on_failed_commit(self, client, mock_s3, ctx):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "upload-1"}
        mock_s3.upload_part.return_value = {"ETag": '"e1"'}
        mock_s3.complete_multipart_upload.side_effect = _client_error(
            "InternalError", 500, "CompleteMultipartUpload"
        )

        writer = client.new_writer(ctx, "prefix/big")
        writer.write(b"x" * (5 * MIB))

        with pytest.raises(TransientError):
            writer.close()

        mock_s3.abort_multipart_upload.assert_called_once_with(
            Bucket="test-bucket", Key="prefix/big", UploadId="upload-1"
        )

    def test_writer_context_manager_aborts_on_error(self, client, mock_s3, ctx):
        mock_s3.create_multipart_upload.return_value = {"UploadId": "upload-1"}
        mock_s3.upload_part.return_value = {"ETag": '"e1"'}

        with pytest.raises(RuntimeError):
            with client.new_writer(ctx, "prefix/big") as writer:
                writer.write(b"x" * (5 * MIB))
                raise RuntimeError("boom")

        mock_s3.complete_multipart_upload.assert_not_called()
        mock_s3.abort_multipart_upload.assert_called_once()

    def test_writer_missing_upload_id(self, client, mock_s3, ctx):
        mock_s3.create_multipart_upload.return_value = {}
        writer = client.new_writer(ctx, "prefix/big")

        with pytest.raises(BackendFailureError, match="missing UploadId"):
            writer.write(b"x" * (5 * MIB))

    def test_writer_stops_on_cancelled_context(self, client, mock_s3):
        ctx = Context.background().with_cancel()
        writer = client.new_writer(ctx, "prefix/stream")
        writer.write(b"abc")
        ctx.cancel()

        with pytest.raises(CanceledError):
            writer.close()

        mock_s3.put_object.assert_not_called()

    def test_list_follows_continuation_tokens(self, client, mock_s3, ctx):
        now = datetime.now(timezone.utc)
        mock_s3.list_objects_v2.side_effect = [
            {
                "Contents": [
                    {"Key": "prefix/a", "Size": 1, "LastModified": now},
                    {"Key": "prefix/b", "Size": 2, "LastModified": now},
                ],
                "IsTruncated": True,
                "NextContinuationToken": "token-1",
            },
            {
                "Contents": [{"Key": "prefix/c", "Size": 3, "LastModified": now}],
                "IsTruncated": False,
            },
        ]

        keys = [item.key for item in client.list(ctx, "prefix/")]

        assert keys == ["prefix/a", "prefix/b", "prefix/c"]
        second_call = mock_s3.list_objects_v2.call_args_list[1]
        assert second_call[1] == {
            "Bucket": "test-bucket",
            "Prefix": "prefix/",
            "MaxKeys": 2,
            "ContinuationToken": "token-1",
        }

    def test_list_empty_prefix(self, client, mock_s3, ctx):
        mock_s3.list_objects_v2.return_value = {"KeyCount": 0, "IsTruncated": False}

        assert list(client.list(ctx, "nothing/")) == []

    def test_attributes(self, client, mock_s3, ctx):
        modified = datetime(2024, 1, 1, tzinfo=timezone.utc)
        mock_s3.head_object.return_value = {
            "ContentLength": 16,
            "LastModified": modified,
            "ETag": '"test-etag"',
            "ContentType": "application/json",
            "Metadata": {"owner": "me"},
        }

        attrs = client.attributes(ctx, "prefix/a")

        assert attrs.size == 16
        assert attrs.mod_time == modified
        assert attrs.etag == "test-etag"
        assert attrs.content_type == "application/json"
        assert attrs.metadata == {"owner": "me"}

    def test_attributes_missing(self, client, mock_s3, ctx):
        mock_s3.head_object.side_effect = _client_error("404", 404, "HeadObject")

        with pytest.raises(NotFoundError):
            client.attributes(ctx, "prefix/missing")

    def test_delete(self, client, mock_s3, ctx):
        mock_s3.head_object.return_value = {
            "ContentLength": 1,
            "LastModified": datetime.now(timezone.utc),
        }

        client.delete(ctx, "prefix/a")

        mock_s3.delete_object.assert_called_once_with(
            Bucket="test-bucket", Key="prefix/a"
        )

    def test_delete_missing(self, client, mock_s3, ctx):
        mock_s3.head_object.side_effect = _client_error("404", 404, "HeadObject")

        with pytest.raises(NotFoundError):
            client.delete(ctx, "prefix/missing")

        mock_s3.delete_object.assert_not_called()

    def test_signed_url_get(self, client, mock_s3, ctx):
        mock_s3.generate_presigned_url.return_value = "https://signed-url"

        url = client.signed_url(ctx, "prefix/a", SignedURLOptions(expiry=timedelta(hours=1)))

        assert url == "https://signed-url"
        mock_s3.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "test-bucket", "Key": "prefix/a"},
            ExpiresIn=3600,
            HttpMethod="GET",
        )

    def test_signed_url_put_with_content_type(self, client, mock_s3, ctx):
        mock_s3.generate_presigned_url.return_value = "https://signed-url"

        client.signed_url(
            ctx,
            "prefix/a",
            SignedURLOptions(method="put", content_type="application/json"),
        )

        call_args = mock_s3.generate_presigned_url.call_args
        assert call_args[0] == ("put_object",)
        assert call_args[1]["Params"]["ContentType"] == "application/json"
        assert call_args[1]["HttpMethod"] == "PUT"

    def test_signed_url_cannot_enforce_absent_content_type(self, client, mock_s3, ctx):
        options = SignedURLOptions(method="PUT", enforce_absent_content_type=True)

        with pytest.raises(InvalidArgumentError):
            client.signed_url(ctx, "prefix/a", options)

        mock_s3.generate_presigned_url.assert_not_called()

    def test_signed_url_rejects_unknown_method(self, client, ctx):
        with pytest.raises(InvalidArgumentError, match="Unsupported signed URL method"):
            client.signed_url(ctx, "prefix/a", SignedURLOptions(method="POST"))

    def test_signed_url_empty(self, client, mock_s3, ctx):
        mock_s3.generate_presigned_url.return_value = ""

        with pytest.raises(BackendFailureError, match="Generated presigned URL is empty"):
            client.signed_url(ctx, "prefix/a", SignedURLOptions())

    def test_throttling_is_transient(self, client, mock_s3, ctx):
        mock_s3.head_object.side_effect = _client_error("SlowDown", 503, "HeadObject")

        with pytest.raises(TransientError):
            client.attributes(ctx, "prefix/a")

    def test_unknown_error_is_backend_failure(self, client, mock_s3, ctx):
        mock_s3.head_object.side_effect = Exception("S3 error")

        with pytest.raises(BackendFailureError, match="Failed to get object metadata") as info:
            client.attributes(ctx, "prefix/a")

        assert str(info.value.cause) == "S3 error"

    def test_cancelled_context_skips_request(self, client, mock_s3):
        ctx = Context.background().with_cancel()
        ctx.cancel()

        with pytest.raises(CanceledError):
            client.attributes(ctx, "prefix/a")

        mock_s3.head_object.assert_not_called()

    def test_deadline_expiring_during_call_is_cancellation(self, client, mock_s3):
        ctx = Context.background().with_timeout(0.2)

        def put_object(**kwargs):
            time.sleep(0.3)
            raise ReadTimeoutError(endpoint_url="http://localhost:4572/test-bucket/prefix/a")

        mock_s3.put_object.side_effect = put_object

        with pytest.raises(CanceledError, match="deadline exceeded") as info:
            client.write(ctx, "prefix/a", b"data")

        assert isinstance(info.value.cause, ReadTimeoutError)

    def test_call_returning_after_deadline_is_cancellation(self, client, mock_s3):
        ctx = Context.background().with_timeout(0.2)

        def put_object(**kwargs):
            time.sleep(0.3)
            return {}

        mock_s3.put_object.side_effect = put_object

        with pytest.raises(CanceledError):
            client.write(ctx, "prefix/a", b"data")

    def test_read_timeout_without_deadline_is_transient(self, client, mock_s3, ctx):
        mock_s3.put_object.side_effect = ReadTimeoutError(endpoint_url="http://localhost:4572")

        with pytest.raises(TransientError):
            client.write(ctx, "prefix/a", b"data")

    def test_deadline_bounds_request_timeouts(self, client, settings):
        bounded = MagicMock()
        ctx = Context.background().with_timeout(5)

        with patch.object(S3StorageClient, "_build_client", return_value=bounded) as build:
            client.write(ctx, "prefix/a", b"1")
            client.write(ctx, "prefix/b", b"2")
            client.close()

        build.assert_called_once_with(settings, timeout=5)
        assert bounded.put_object.call_count == 2
        bounded.close.assert_called_once()

    def test_build_client_caps_timeouts(self, settings):
        with patch("commonblob.infra.storage.s3_client.boto3.client") as factory:
            S3StorageClient._build_client(settings, timeout=3)

        config = factory.call_args[1]["config"]
        assert config.connect_timeout == 3
        assert config.read_timeout == 3

    def test_close(self, client, mock_s3):
        client.close()

        mock_s3.close.assert_called_once()
