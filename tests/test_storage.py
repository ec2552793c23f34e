"""Tests for remote object store adapters."""

import base64
import hashlib
import io
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest

from blobmirror.core.config import RemoteConfig
from blobmirror.core.types import ErrorKind
from blobmirror.storage import (
    AuthenticationError,
    AzureBlobStore,
    LocalObjectStore,
    NetworkError,
    ObjectNotFoundError,
    ObjectStore,
    S3ObjectStore,
    StoreError,
    create_store,
)


class TestLocalObjectStore:
    """Tests for LocalObjectStore."""

    def test_lists_in_key_order(self, remote: LocalObjectStore, make_objects) -> None:
        """Objects are listed sorted by key with their metadata."""
        keys = make_objects(3)

        page = remote.list_objects("bucket", "", 10)

        assert [o.key for o in page.objects] == keys
        assert page.continuation_token is None
        first = page.objects[0]
        assert first.path == first.key
        assert first.size == len(b"content of object 0\n")
        assert first.content_hash == hashlib.md5(b"content of object 0\n").hexdigest()
        assert first.last_modified.microsecond == 0
        assert first.last_modified.tzinfo is not None

    def test_pagination(self, remote: LocalObjectStore, make_objects) -> None:
        """Pages chain through the continuation token."""
        keys = make_objects(5)

        first = remote.list_objects("bucket", "", 2)
        second = remote.list_objects("bucket", "", 2, first.continuation_token)
        third = remote.list_objects("bucket", "", 2, second.continuation_token)

        listed = [o.key for page in (first, second, third) for o in page.objects]
        assert listed == keys
        assert first.continuation_token is not None
        assert third.continuation_token is None

    def test_exact_page_has_no_token(self, remote: LocalObjectStore, make_objects) -> None:
        """A page that exhausts the listing carries no token."""
        make_objects(2)

        page = remote.list_objects("bucket", "", 2)
        assert len(page.objects) == 2
        assert page.continuation_token is None

    def test_prefix_filter(self, remote: LocalObjectStore, remote_root: Path) -> None:
        """Only keys under the prefix are listed."""
        (remote_root / "bucket" / "logs").mkdir()
        (remote_root / "bucket" / "logs" / "a.log").write_bytes(b"a")
        (remote_root / "bucket" / "other.txt").write_bytes(b"b")

        page = remote.list_objects("bucket", "logs/", 10)
        assert [o.key for o in page.objects] == ["logs/a.log"]

    def test_missing_container(self, remote: LocalObjectStore) -> None:
        """Listing an unknown container raises StoreError."""
        assert remote.container_exists("bucket") is True
        assert remote.container_exists("nope") is False
        with pytest.raises(StoreError, match="Container not found"):
            remote.list_objects("nope", "", 10)

    def test_download(self, remote: LocalObjectStore, make_objects) -> None:
        """download_object streams the bytes into the sink."""
        keys = make_objects(2)
        sink = io.BytesIO()

        assert remote.download_object("bucket", keys[1], sink) is True

        assert sink.getvalue() == b"content of object 1\n" * 2

    def test_download_missing(self, remote: LocalObjectStore) -> None:
        """Missing objects raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError) as exc_info:
            remote.download_object("bucket", "gone.txt", io.BytesIO())
        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    def test_rejects_traversal(self, remote: LocalObjectStore) -> None:
        """Keys escaping the container are rejected."""
        with pytest.raises(StoreError, match="Invalid object key"):
            remote.download_object("bucket", "../secret", io.BytesIO())

    def test_properties(self, remote: LocalObjectStore, make_objects) -> None:
        """get_object_properties matches the listing."""
        keys = make_objects(1)

        listed = remote.list_objects("bucket", "", 10).objects[0]
        props = remote.get_object_properties("bucket", keys[0])

        assert props == listed
        with pytest.raises(ObjectNotFoundError):
            remote.get_object_properties("bucket", "missing")

    def test_etag_changes_with_content(
        self, remote: LocalObjectStore, remote_root: Path
    ) -> None:
        """Rewriting an object with a different size changes its ETag."""
        path = remote_root / "bucket" / "x.txt"
        path.write_bytes(b"one")
        before = remote.get_object_properties("bucket", "x.txt").etag

        path.write_bytes(b"one two")
        after = remote.get_object_properties("bucket", "x.txt").etag

        assert before != after


class TestS3ObjectStore:
    """Tests for S3ObjectStore using moto mock."""

    @pytest.fixture
    def mock_s3(self):
        """Set up moto mock for S3."""
        pytest.importorskip("moto")
        import boto3
        from moto import mock_aws

        with mock_aws():
            client = boto3.client("s3", region_name="us-east-1")
            client.create_bucket(Bucket="test-bucket")
            yield client

    @pytest.fixture
    def s3(self, mock_s3) -> S3ObjectStore:
        """Create an S3ObjectStore instance for testing."""
        return S3ObjectStore(region="us-east-1")

    def test_list_and_download(self, s3: S3ObjectStore, mock_s3) -> None:
        """Objects are listed with their MD5 and can be downloaded."""
        mock_s3.put_object(Bucket="test-bucket", Key="logs/a.txt", Body=b"hello")

        page = s3.list_objects("test-bucket", "", 100)

        assert [o.key for o in page.objects] == ["logs/a.txt"]
        assert page.objects[0].size == 5
        assert page.objects[0].content_hash == hashlib.md5(b"hello").hexdigest()
        assert page.continuation_token is None

        sink = io.BytesIO()
        assert s3.download_object("test-bucket", "logs/a.txt", sink) is True
        assert sink.getvalue() == b"hello"

    def test_pagination(self, s3: S3ObjectStore, mock_s3) -> None:
        """Truncated listings return a continuation token."""
        for i in range(5):
            mock_s3.put_object(Bucket="test-bucket", Key=f"k{i}", Body=b"x")

        keys: list[str] = []
        token = None
        pages = 0
        while True:
            page = s3.list_objects("test-bucket", "", 2, token)
            keys.extend(o.key for o in page.objects)
            pages += 1
            token = page.continuation_token
            if token is None:
                break

        assert keys == [f"k{i}" for i in range(5)]
        assert pages == 3

    def test_download_missing(self, s3: S3ObjectStore) -> None:
        """Missing keys raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            s3.download_object("test-bucket", "missing", io.BytesIO())

    def test_properties(self, s3: S3ObjectStore, mock_s3) -> None:
        """head_object metadata is mapped to a descriptor."""
        mock_s3.put_object(Bucket="test-bucket", Key="a", Body=b"abc")

        props = s3.get_object_properties("test-bucket", "a")
        assert props.size == 3
        assert props.content_hash == hashlib.md5(b"abc").hexdigest()

        with pytest.raises(ObjectNotFoundError):
            s3.get_object_properties("test-bucket", "missing")

    def test_container_exists(self, s3: S3ObjectStore) -> None:
        """head_bucket distinguishes existing and missing buckets."""
        assert s3.container_exists("test-bucket") is True
        assert s3.container_exists("no-such-bucket") is False

    def test_multipart_etag_has_no_md5(self) -> None:
        """Multipart ETags are not used as content hashes."""
        assert S3ObjectStore._md5_from_etag('"d41d8cd98f00b204e9800998ecf8427e-3"') is None
        assert (
            S3ObjectStore._md5_from_etag('"D41D8CD98F00B204E9800998ECF8427E"')
            == "d41d8cd98f00b204e9800998ecf8427e"
        )

    def test_kms_encrypted_object_not_verified(self, s3: S3ObjectStore, mock_s3) -> None:
        """ETags of KMS-encrypted objects are not treated as content MD5s."""
        mock_s3.put_object(
            Bucket="test-bucket", Key="secret", Body=b"classified", ServerSideEncryption="aws:kms"
        )

        sink = io.BytesIO()
        assert s3.download_object("test-bucket", "secret", sink) is False
        assert sink.getvalue() == b"classified"
        assert s3.get_object_properties("test-bucket", "secret").content_hash is None

    def test_etag_is_md5(self) -> None:
        """Only unencrypted or SSE-S3 responses carry MD5 ETags."""
        assert S3ObjectStore._etag_is_md5({}) is True
        assert S3ObjectStore._etag_is_md5({"ServerSideEncryption": "AES256"}) is True
        assert S3ObjectStore._etag_is_md5({"ServerSideEncryption": "aws:kms"}) is False
        assert S3ObjectStore._etag_is_md5({"ServerSideEncryption": "aws:kms:dsse"}) is False
        assert S3ObjectStore._etag_is_md5({"SSECustomerAlgorithm": "AES256"}) is False

    def test_translate_client_errors(self) -> None:
        """Client errors are tagged with the right kind."""
        pytest.importorskip("botocore")
        from botocore.exceptions import ClientError

        def client_error(code: str, status: int) -> ClientError:
            return ClientError(
                {
                    "Error": {"Code": code, "Message": "msg"},
                    "ResponseMetadata": {"HTTPStatusCode": status},
                },
                "GetObject",
            )

        assert isinstance(
            S3ObjectStore._translate(client_error("AccessDenied", 403), "x"),
            AuthenticationError,
        )
        assert isinstance(
            S3ObjectStore._translate(client_error("SlowDown", 503), "x"), NetworkError
        )
        assert isinstance(
            S3ObjectStore._translate(client_error("NoSuchKey", 404), "x"),
            ObjectNotFoundError,
        )
        assert type(S3ObjectStore._translate(client_error("Weird", 400), "x")) is StoreError


ACCOUNT_URL = "https://acct.blob.core.windows.net"

LIST_XML = """<?xml version="1.0" encoding="utf-8"?>
<EnumerationResults ContainerName="https://acct.blob.core.windows.net/data">
  <Blobs>
    <Blob>
      <Name>logs/a.txt</Name>
      <Properties>
        <Last-Modified>Fri, 01 Mar 2024 14:30:45 GMT</Last-Modified>
        <Etag>0x8DC39</Etag>
        <Content-Length>5</Content-Length>
        <Content-MD5>{md5}</Content-MD5>
      </Properties>
    </Blob>
  </Blobs>
  <NextMarker>{marker}</NextMarker>
</EnumerationResults>
"""


def azure_md5(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode()


class TestAzureBlobStore:
    """Tests for AzureBlobStore against a mocked Blob service."""

    @pytest.fixture
    def azure(self) -> Iterator[AzureBlobStore]:
        """Create an AzureBlobStore instance for testing."""
        store = AzureBlobStore(ACCOUNT_URL, sas_token="?sv=2021&sig=abc")
        yield store
        store.close()

    def test_list_objects(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """List Blobs XML is parsed into descriptors."""
        httpx_mock.add_response(
            text=LIST_XML.format(md5=azure_md5(b"hello"), marker="next-1")
        )

        page = azure.list_objects("data", "logs/", 10)

        assert len(page.objects) == 1
        obj = page.objects[0]
        assert obj.key == "logs/a.txt"
        assert obj.size == 5
        assert obj.etag == "0x8DC39"
        assert obj.content_hash == hashlib.md5(b"hello").hexdigest()
        assert obj.last_modified.isoformat() == "2024-03-01T14:30:45+00:00"
        assert page.continuation_token == "next-1"

        request = httpx_mock.get_request()
        assert request.url.path == "/data"
        assert request.url.params["comp"] == "list"
        assert request.url.params["prefix"] == "logs/"
        assert request.url.params["sig"] == "abc"
        assert request.headers["x-ms-version"]

    def test_marker_is_sent(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """The continuation token is passed as the marker."""
        httpx_mock.add_response(text=LIST_XML.format(md5=azure_md5(b"x"), marker=""))

        page = azure.list_objects("data", "", 10, "next-1")

        assert page.continuation_token is None
        assert httpx_mock.get_request().url.params["marker"] == "next-1"

    def test_download(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Blob bodies are streamed into the sink."""
        httpx_mock.add_response(content=b"payload")
        sink = io.BytesIO()

        assert azure.download_object("data", "logs/a.txt", sink) is True

        assert sink.getvalue() == b"payload"
        assert httpx_mock.get_request().url.path == "/data/logs/a.txt"

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (403, AuthenticationError),
            (404, ObjectNotFoundError),
            (503, NetworkError),
            (429, NetworkError),
            (400, StoreError),
        ],
    )
    def test_status_mapping(
        self, azure: AzureBlobStore, httpx_mock, status: int, error: type[StoreError]  # type: ignore[no-untyped-def]
    ) -> None:
        """HTTP errors are mapped to tagged store errors."""
        httpx_mock.add_response(status_code=status)

        with pytest.raises(error):
            azure.download_object("data", "a", io.BytesIO())

    def test_transport_error_is_network(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Connection failures are network errors."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))

        with pytest.raises(NetworkError) as exc_info:
            azure.list_objects("data", "", 10)
        assert exc_info.value.kind.retryable

    def test_properties(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """HEAD headers are mapped to a descriptor."""
        httpx_mock.add_response(
            method="HEAD",
            headers={
                "Content-Length": "7",
                "ETag": '"0x1"',
                "Last-Modified": "Fri, 01 Mar 2024 14:30:45 GMT",
                "Content-MD5": azure_md5(b"payload"),
            },
        )

        props = azure.get_object_properties("data", "a")

        assert props.size == 7
        assert props.etag == '"0x1"'
        assert props.content_hash == hashlib.md5(b"payload").hexdigest()

    def test_container_exists(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Get Container Properties distinguishes existing containers."""
        httpx_mock.add_response(status_code=200)

        assert azure.container_exists("data") is True
        assert httpx_mock.get_request().url.params["restype"] == "container"

    def test_container_missing(self, azure: AzureBlobStore, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """404 on the container means it does not exist."""
        httpx_mock.add_response(status_code=404)

        assert azure.container_exists("data") is False


class TestCreateStore:
    """Tests for create_store factory."""

    def test_create_local(self, tmp_path: Path) -> None:
        """Local backend creates a LocalObjectStore."""
        store = create_store(RemoteConfig(backend="local", local_root=str(tmp_path)))
        assert isinstance(store, LocalObjectStore)

    def test_local_requires_root(self) -> None:
        """Local backend without a root is rejected."""
        with pytest.raises(ValueError, match="local_root"):
            create_store(RemoteConfig(backend="local"))

    def test_create_s3(self) -> None:
        """S3 backend creates an S3ObjectStore."""
        pytest.importorskip("moto")
        from moto import mock_aws

        with mock_aws():
            store = create_store(RemoteConfig(backend="s3", region="us-east-1"))
            assert isinstance(store, S3ObjectStore)

    def test_create_azure(self) -> None:
        """Azure backend creates an AzureBlobStore."""
        store = create_store(
            RemoteConfig(backend="azure", account_url="https://acct.blob.core.windows.net")
        )
        assert isinstance(store, AzureBlobStore)
        store.close()

    def test_unknown_backend(self) -> None:
        """Unknown backends raise ValueError."""
        with pytest.raises(ValueError, match="Unknown remote backend"):
            create_store(RemoteConfig(backend="ftp"))

    def test_cannot_instantiate_abstract(self) -> None:
        """ObjectStore is abstract."""
        with pytest.raises(TypeError):
            ObjectStore()  # type: ignore[abstract]
