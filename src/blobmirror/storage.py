"""Remote object store abstraction.

This module provides:
- ObjectStore: Abstract interface for a paginated, read-only object store
- LocalObjectStore: A local directory tree, for development and testing
- S3ObjectStore: S3-compatible buckets (AWS, OVH, MinIO) via boto3
- AzureBlobStore: Azure Blob containers via the Blob REST API (httpx)
- create_store: Factory building a store from RemoteConfig

Every adapter tags failures at the origin with a StoreError subclass so the
download worker can decide whether to retry without inspecting messages.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, BinaryIO
from urllib.parse import parse_qsl, quote

import httpx

from blobmirror.core.errors import SyncError
from blobmirror.core.hashing import compute_file_hash, md5_base64_to_hex
from blobmirror.core.types import ErrorKind

if TYPE_CHECKING:
    from typing import Any

    from blobmirror.core.config import RemoteConfig

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 1024 * 1024

AZURE_API_VERSION = "2021-08-06"

_MD5_ETAG = re.compile(r"^[0-9a-f]{32}$")


class StoreError(SyncError):
    """Remote store operation failed (kind: unknown)."""


class NetworkError(StoreError):
    """Transient transport failure: connection, timeout, throttling, 5xx."""

    kind = ErrorKind.NETWORK


class AuthenticationError(StoreError):
    """Credentials were missing, invalid or lacked permission."""

    kind = ErrorKind.AUTH


class ObjectNotFoundError(StoreError):
    """The object does not exist (e.g. deleted after it was listed)."""

    kind = ErrorKind.NOT_FOUND


@dataclass
class ObjectDescriptor:
    """Metadata about a remote object, as returned by a listing.

    Attributes:
        key: Remote object key.
        path: Logical path relative to the output directory.
        size: Size in bytes.
        etag: Entity tag as reported by the store.
        last_modified: Aware UTC last-modified timestamp.
        content_hash: Lowercase hex MD5, when the store reports one.
    """

    key: str
    path: str
    size: int
    etag: str
    last_modified: datetime
    content_hash: str | None = None


@dataclass
class ObjectPage:
    """One page of a listing. ``continuation_token`` is None on the last page."""

    objects: list[ObjectDescriptor] = field(default_factory=list)
    continuation_token: str | None = None


class ObjectStore(ABC):
    """Abstract interface for a remote object store."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of the store."""

    @abstractmethod
    def list_objects(
        self,
        container: str,
        prefix: str,
        page_size: int,
        continuation_token: str | None = None,
    ) -> ObjectPage:
        """List one page of objects.

        Args:
            container: Container (bucket) name.
            prefix: Only return keys starting with this prefix.
            page_size: Maximum number of objects to return.
            continuation_token: Opaque cursor from the previous page.

        Returns:
            The page of objects and the cursor for the next page.

        Raises:
            StoreError: If the listing fails.
        """

    @abstractmethod
    def download_object(self, container: str, key: str, sink: BinaryIO) -> bool:
        """Stream an object's bytes into a binary sink.

        Returns:
            True if the listed ``content_hash`` is a digest of the bytes
            served, False if the response shows it is not (e.g. an S3 ETag
            of a KMS or customer-key encrypted object).

        Raises:
            ObjectNotFoundError: If the object no longer exists.
            StoreError: For other remote failures.
        """

    @abstractmethod
    def get_object_properties(self, container: str, key: str) -> ObjectDescriptor:
        """Fetch metadata for a single object.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
        """

    @abstractmethod
    def container_exists(self, container: str) -> bool:
        """Check if a container exists and is reachable."""

    def close(self) -> None:
        """Release network resources held by the store."""

    def __enter__(self) -> ObjectStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _truncate(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0)


class LocalObjectStore(ObjectStore):
    """A local directory tree served as an object store.

    Each container is a sub-directory of the root, and keys are POSIX paths
    relative to it. The ETag is derived from mtime and size, and the MD5 is
    computed while listing.
    """

    def __init__(self, root: Path | str) -> None:
        """Initialize local store.

        Args:
            root: Directory holding one sub-directory per container.
        """
        self._root = Path(root).resolve()

    @property
    def location(self) -> str:
        """Return the local root path."""
        return f"Local directory: {self._root}"

    def _container_path(self, container: str) -> Path:
        return self._root / container

    def _object_path(self, container: str, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or ".." in parts or key.startswith("/"):
            raise StoreError(f"Invalid object key: {key!r}")
        return self._container_path(container).joinpath(*parts)

    def _describe(self, key: str, path: Path) -> ObjectDescriptor:
        stat = path.stat()
        return ObjectDescriptor(
            key=key,
            path=key,
            size=stat.st_size,
            etag=f'"{stat.st_mtime_ns:x}-{stat.st_size:x}"',
            last_modified=_truncate(datetime.fromtimestamp(stat.st_mtime, UTC)),
            content_hash=compute_file_hash(path),
        )

    def list_objects(
        self,
        container: str,
        prefix: str,
        page_size: int,
        continuation_token: str | None = None,
    ) -> ObjectPage:
        """List objects in key order; the token is the last key returned."""
        base = self._container_path(container)
        if not base.is_dir():
            raise StoreError(f"Container not found: {container}")

        keys = sorted(
            p.relative_to(base).as_posix()
            for p in base.rglob("*")
            if p.is_file()
        )
        keys = [k for k in keys if k.startswith(prefix)]
        if continuation_token is not None:
            keys = [k for k in keys if k > continuation_token]

        selected = keys[:page_size]
        objects: list[ObjectDescriptor] = []
        for key in selected:
            try:
                objects.append(self._describe(key, base / key))
            except FileNotFoundError:
                # Removed between the directory walk and the stat
                continue
            except OSError as e:
                raise StoreError(f"Failed to stat {key}: {e}") from e

        token = selected[-1] if len(keys) > page_size else None
        return ObjectPage(objects=objects, continuation_token=token)

    def download_object(self, container: str, key: str, sink: BinaryIO) -> bool:
        """Copy the object's bytes into the sink."""
        path = self._object_path(container, key)
        try:
            with open(path, "rb") as f:
                shutil.copyfileobj(f, sink, STREAM_CHUNK_SIZE)
            return True
        except SyncError:
            raise
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object not found: {key}") from e
        except PermissionError as e:
            raise AuthenticationError(f"Permission denied reading {key}") from e
        except OSError as e:
            raise StoreError(f"Failed to read {key}: {e}") from e

    def get_object_properties(self, container: str, key: str) -> ObjectDescriptor:
        """Stat a single object."""
        path = self._object_path(container, key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}")
        return self._describe(key, path)

    def container_exists(self, container: str) -> bool:
        """Check if the container directory exists."""
        return self._container_path(container).is_dir()


class S3ObjectStore(ObjectStore):
    """S3-compatible object store (AWS, OVH, MinIO, etc.)."""

    def __init__(
        self,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
        timeout: float = 30.0,
    ) -> None:
        """Initialize S3 store.

        Args:
            endpoint_url: Custom endpoint URL (for OVH, MinIO, etc.).
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
            timeout: Connect and read timeout in seconds.
        """
        import boto3
        from botocore.config import Config

        self._endpoint_url = endpoint_url
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(connect_timeout=timeout, read_timeout=timeout),
        )

    @property
    def location(self) -> str:
        """Return the S3 endpoint."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}"
        return "S3: AWS"

    @staticmethod
    def _translate(e: Exception, what: str) -> StoreError:
        """Map a botocore exception to a tagged StoreError."""
        from botocore.exceptions import (
            ClientError,
            HTTPClientError,
            NoCredentialsError,
            PartialCredentialsError,
        )
        from botocore.exceptions import ConnectionError as BotoConnectionError

        if isinstance(e, ClientError):
            error = e.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            message = f"{what}: {code or status} {error.get('Message', '')}".strip()
            if code in ("NoSuchKey", "NotFound", "404"):
                return ObjectNotFoundError(message)
            if code in (
                "AccessDenied",
                "InvalidAccessKeyId",
                "SignatureDoesNotMatch",
                "ExpiredToken",
                "403",
            ) or status in (401, 403):
                return AuthenticationError(message)
            if code in ("SlowDown", "Throttling", "RequestTimeout") or status >= 500:
                return NetworkError(message)
            return StoreError(message)
        if isinstance(e, (NoCredentialsError, PartialCredentialsError)):
            return AuthenticationError(f"{what}: {e}")
        if isinstance(e, (BotoConnectionError, HTTPClientError)):
            return NetworkError(f"{what}: {e}")
        return StoreError(f"{what}: {e}")

    @staticmethod
    def _md5_from_etag(etag: str) -> str | None:
        # Multipart ETags ("<hash>-<parts>") are not content MD5s
        value = etag.strip('"').lower()
        return value if _MD5_ETAG.match(value) else None

    @staticmethod
    def _etag_is_md5(response: dict[str, Any]) -> bool:
        """Whether a GET/HEAD response's ETag can be an MD5 of the content.

        SSE-KMS, DSSE-KMS and SSE-C objects get ETags that are not content
        digests, even for single-part uploads.
        """
        if response.get("SSECustomerAlgorithm"):
            return False
        return not str(response.get("ServerSideEncryption", "")).startswith("aws:kms")

    def list_objects(
        self,
        container: str,
        prefix: str,
        page_size: int,
        continuation_token: str | None = None,
    ) -> ObjectPage:
        """List one page using list_objects_v2."""
        from botocore.exceptions import BotoCoreError, ClientError

        kwargs: dict[str, Any] = {
            "Bucket": container,
            "Prefix": prefix,
            "MaxKeys": page_size,
        }
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token

        try:
            response = self._client.list_objects_v2(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, f"Failed to list {container}") from e

        objects = [
            ObjectDescriptor(
                key=item["Key"],
                path=item["Key"],
                size=item["Size"],
                etag=item["ETag"],
                last_modified=_truncate(item["LastModified"]),
                # Listings omit encryption; download_object tells if this applies
                content_hash=self._md5_from_etag(item["ETag"]),
            )
            for item in response.get("Contents", [])
        ]
        token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ObjectPage(objects=objects, continuation_token=token)

    def download_object(self, container: str, key: str, sink: BinaryIO) -> bool:
        """Stream an object with get_object."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.get_object(Bucket=container, Key=key)
            for chunk in response["Body"].iter_chunks(STREAM_CHUNK_SIZE):
                sink.write(chunk)
            return self._etag_is_md5(response)
        except SyncError:
            raise
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, f"Failed to download {key}") from e

    def get_object_properties(self, container: str, key: str) -> ObjectDescriptor:
        """Fetch metadata with head_object."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._client.head_object(Bucket=container, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise self._translate(e, f"Failed to get properties of {key}") from e

        return ObjectDescriptor(
            key=key,
            path=key,
            size=response["ContentLength"],
            etag=response["ETag"],
            last_modified=_truncate(response["LastModified"]),
            content_hash=(
                self._md5_from_etag(response["ETag"])
                if self._etag_is_md5(response)
                else None
            ),
        )

    def container_exists(self, container: str) -> bool:
        """Check the bucket with head_bucket."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client.head_bucket(Bucket=container)
            return True
        except ClientError as e:
            error = self._translate(e, f"Failed to check bucket {container}")
            if isinstance(error, ObjectNotFoundError) or "NoSuchBucket" in str(e):
                return False
            raise error from e
        except BotoCoreError as e:
            raise self._translate(e, f"Failed to check bucket {container}") from e


class AzureBlobStore(ObjectStore):
    """Azure Blob Storage container, via the Blob service REST API."""

    def __init__(
        self,
        account_url: str,
        sas_token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize Azure store.

        Args:
            account_url: Blob service URL
                (e.g. "https://account.blob.core.windows.net").
            sas_token: Shared access signature query string, with or
                without the leading "?".
            timeout: Request timeout in seconds.
        """
        self._account_url = account_url.rstrip("/")
        params = dict(parse_qsl(sas_token.lstrip("?"))) if sas_token else {}
        self._client = httpx.Client(
            base_url=self._account_url,
            params=params,
            timeout=timeout,
            headers={"x-ms-version": AZURE_API_VERSION},
        )

    @property
    def location(self) -> str:
        """Return the account URL."""
        return f"Azure Blob: {self._account_url}"

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    @staticmethod
    def _blob_url(container: str, key: str) -> str:
        return f"/{quote(container)}/{quote(key, safe='/')}"

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        """Raise a tagged StoreError for an error response."""
        status = response.status_code
        if status < 400:
            return
        message = f"{what}: HTTP {status}"
        if status in (401, 403):
            raise AuthenticationError(message)
        if status == 404:
            raise ObjectNotFoundError(message)
        if status in (408, 429) or status >= 500:
            raise NetworkError(message)
        raise StoreError(message)

    @staticmethod
    def _parse_time(value: str | None) -> datetime:
        if not value:
            return datetime.fromtimestamp(0, UTC)
        return _truncate(parsedate_to_datetime(value))

    def list_objects(
        self,
        container: str,
        prefix: str,
        page_size: int,
        continuation_token: str | None = None,
    ) -> ObjectPage:
        """List one page with the List Blobs operation."""
        params: dict[str, str | int] = {
            "restype": "container",
            "comp": "list",
            "maxresults": page_size,
        }
        if prefix:
            params["prefix"] = prefix
        if continuation_token:
            params["marker"] = continuation_token

        what = f"Failed to list {container}"
        try:
            response = self._client.get(f"/{quote(container)}", params=params)
        except httpx.TransportError as e:
            raise NetworkError(f"{what}: {e}") from e
        self._check(response, what)

        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise StoreError(f"{what}: malformed listing ({e})") from e

        objects: list[ObjectDescriptor] = []
        for blob in root.iter("Blob"):
            name = blob.findtext("Name")
            if not name:
                continue
            props = blob.find("Properties")

            def prop(tag: str, props: ET.Element | None = props) -> str | None:
                return props.findtext(tag) if props is not None else None

            objects.append(
                ObjectDescriptor(
                    key=name,
                    path=name,
                    size=int(prop("Content-Length") or 0),
                    etag=prop("Etag") or "",
                    last_modified=self._parse_time(prop("Last-Modified")),
                    content_hash=md5_base64_to_hex(prop("Content-MD5")),
                )
            )

        next_marker = root.findtext("NextMarker")
        return ObjectPage(objects=objects, continuation_token=next_marker or None)

    def download_object(self, container: str, key: str, sink: BinaryIO) -> bool:
        """Stream the blob body into the sink."""
        what = f"Failed to download {key}"
        try:
            with self._client.stream("GET", self._blob_url(container, key)) as response:
                self._check(response, what)
                for chunk in response.iter_bytes(STREAM_CHUNK_SIZE):
                    sink.write(chunk)
        except httpx.TransportError as e:
            raise NetworkError(f"{what}: {e}") from e
        return True

    def get_object_properties(self, container: str, key: str) -> ObjectDescriptor:
        """Fetch blob properties with a HEAD request."""
        what = f"Failed to get properties of {key}"
        try:
            response = self._client.head(self._blob_url(container, key))
        except httpx.TransportError as e:
            raise NetworkError(f"{what}: {e}") from e
        self._check(response, what)

        headers = response.headers
        return ObjectDescriptor(
            key=key,
            path=key,
            size=int(headers.get("Content-Length", 0)),
            etag=headers.get("ETag", ""),
            last_modified=self._parse_time(headers.get("Last-Modified")),
            content_hash=md5_base64_to_hex(headers.get("Content-MD5")),
        )

    def container_exists(self, container: str) -> bool:
        """Check the container with Get Container Properties."""
        what = f"Failed to check container {container}"
        try:
            response = self._client.get(
                f"/{quote(container)}", params={"restype": "container"}
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{what}: {e}") from e
        if response.status_code == 404:
            return False
        self._check(response, what)
        return True


def create_store(config: RemoteConfig) -> ObjectStore:
    """Factory function to create an object store from configuration.

    Args:
        config: Remote configuration.

    Returns:
        Configured ObjectStore instance.

    Raises:
        ValueError: If the backend is unknown or incompletely configured.
    """
    backend = config.backend

    if backend == "local":
        if not config.local_root:
            raise ValueError("Local backend requires 'local_root' configuration")
        return LocalObjectStore(os.path.expanduser(config.local_root))

    if backend == "s3":
        return S3ObjectStore(
            endpoint_url=config.endpoint_url,
            access_key=config.access_key,
            secret_key=config.secret_key,
            region=config.region or "us-east-1",
            timeout=config.timeout,
        )

    if backend == "azure":
        if not config.account_url:
            raise ValueError("Azure backend requires 'account_url' configuration")
        return AzureBlobStore(
            account_url=config.account_url,
            sas_token=config.sas_token,
            timeout=config.timeout,
        )

    raise ValueError(f"Unknown remote backend: {backend}")
