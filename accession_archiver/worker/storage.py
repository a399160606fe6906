"""
Artifact storage abstraction.

s3://bucket/prefix   S3 or any S3-compatible object store (boto3)
file:///path         local filesystem
memory://            process memory (tests, dry runs)

Storage is addressed by URI, so the orchestrator never needs to know which
backend it is writing to. Puts are keyed deterministically per accession;
writing the same key twice replaces the object rather than duplicating it.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings, get_settings
from ..errors import (
    ArtifactNotFoundError,
    PermanentExternalError,
    TransientExternalError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
_TRANSIENT_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "InternalError",
        "ServiceUnavailable",
    }
)


def artifact_key(prefix: str, accession_id: str) -> str:
    """Deterministic object key for an accession's WACZ."""
    prefix = prefix.strip("/")
    name = f"{accession_id}.wacz"
    return f"{prefix}/{name}" if prefix else name


class ArtifactStore(ABC):
    """Abstract base class for artifact storage."""

    scheme: str = ""

    @abstractmethod
    async def put(self, key: str, body: BinaryIO, content_type: str) -> str:
        """Store the contents of ``body`` under ``key`` and return its durable reference."""
        pass

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read the object at ``key``; raise ArtifactNotFoundError if absent."""
        pass

    @abstractmethod
    async def download_url(self, key: str, expires_in: int = 3600) -> str:
        """URL a client can use to download the object at ``key``."""
        pass

    @abstractmethod
    def reference_for(self, key: str) -> str:
        """The reference ``put`` returns for ``key``."""
        pass


class FileArtifactStore(ArtifactStore):
    """Local filesystem artifact store (file:// URIs).

    Objects are written to a temporary file in the target directory and
    renamed into place, so a reader never sees a partial artifact.
    """

    scheme = "file"

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise PermanentExternalError(f"Key escapes the store root: {key}", service="file")
        return path

    def _write(self, key: str, body: BinaryIO) -> Path:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                shutil.copyfileobj(body, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return path

    async def put(self, key: str, body: BinaryIO, content_type: str) -> str:
        try:
            await asyncio.to_thread(self._write, key, body)
        except OSError as e:
            raise TransientExternalError(f"Could not write {key}: {e}", service="file") from e
        return self.reference_for(key)

    async def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(key) from e

    async def download_url(self, key: str, expires_in: int = 3600) -> str:
        path = self._path_for(key)
        if not path.exists():
            raise ArtifactNotFoundError(key)
        return path.as_uri()

    def reference_for(self, key: str) -> str:
        return f"file://{self.base_path.resolve() / key}"


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _http_status(error: ClientError) -> Optional[int]:
    return error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def _translate_client_error(error: ClientError, action: str, key: str) -> Exception:
    code = _error_code(error)
    status = _http_status(error)
    message = f"S3 {action} of {key} failed: {code or error}"
    if code in _NOT_FOUND_CODES:
        return ArtifactNotFoundError(key)
    if code in _TRANSIENT_CODES or (status is not None and status >= 500):
        return TransientExternalError(message, service="s3", status_code=status)
    return PermanentExternalError(message, service="s3", status_code=status)


class S3ArtifactStore(ArtifactStore):
    """S3 artifact store (s3:// URIs).

    The boto3 client is blocking, so calls run in a worker thread. Bodies
    are streamed from the file object handed to ``put``. Download URLs are
    presigned with SigV4.
    """

    scheme = "s3"

    def __init__(self, bucket: str, key_root: str = "", client=None):
        self.bucket = bucket
        self.key_root = key_root.strip("/")
        self.client = client or boto3.client("s3", config=Config(signature_version="s3v4"))

    @classmethod
    def from_settings(cls, bucket: str, key_root: str, settings: Settings) -> "S3ArtifactStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            config=Config(signature_version="s3v4"),
        )
        return cls(bucket, key_root=key_root, client=client)

    def _object_key(self, key: str) -> str:
        return f"{self.key_root}/{key}" if self.key_root else key

    async def put(self, key: str, body: BinaryIO, content_type: str) -> str:
        object_key = self._object_key(key)
        try:
            response = await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=object_key,
                Body=body,
                ContentType=content_type,
            )
        except ClientError as e:
            raise _translate_client_error(e, "upload", object_key) from e
        except BotoCoreError as e:
            raise TransientExternalError(f"S3 upload of {object_key} failed: {e}", service="s3") from e
        logger.info(f"Uploaded {object_key} to bucket {self.bucket} (etag {response.get('ETag')})")
        return self.reference_for(key)

    async def get(self, key: str) -> bytes:
        object_key = self._object_key(key)
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=object_key
            )
            return await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            raise _translate_client_error(e, "download", object_key) from e
        except BotoCoreError as e:
            raise TransientExternalError(f"S3 download of {object_key} failed: {e}", service="s3") from e

    async def download_url(self, key: str, expires_in: int = 3600) -> str:
        """Presigned GET URL. The object must exist."""
        object_key = self._object_key(key)
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=object_key)
            return await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": object_key},
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise _translate_client_error(e, "presign", object_key) from e
        except BotoCoreError as e:
            raise TransientExternalError(f"S3 presign of {object_key} failed: {e}", service="s3") from e

    def reference_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{self._object_key(key)}"


@dataclass
class InMemoryArtifactStore(ArtifactStore):
    """Artifact store kept in a dict.

    Exceptions queued in ``put_errors`` are raised, in order, by the next puts.
    """

    objects: Dict[str, Tuple[bytes, str]] = field(default_factory=dict)
    put_errors: List[Exception] = field(default_factory=list)
    put_calls: List[str] = field(default_factory=list)

    scheme = "memory"

    async def put(self, key: str, body: BinaryIO, content_type: str) -> str:
        self.put_calls.append(key)
        await asyncio.sleep(0)
        if self.put_errors:
            raise self.put_errors.pop(0)
        self.objects[key] = (body.read(), content_type)
        return self.reference_for(key)

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise ArtifactNotFoundError(key)
        return self.objects[key][0]

    async def download_url(self, key: str, expires_in: int = 3600) -> str:
        if key not in self.objects:
            raise ArtifactNotFoundError(key)
        return self.reference_for(key)

    def reference_for(self, key: str) -> str:
        return f"memory://{key}"


def _file_path(uri: str) -> Path:
    parsed = urlparse(uri)
    # file://./artifacts puts "." in netloc; treat it as a relative path
    if parsed.netloc and parsed.netloc != "localhost":
        return Path(parsed.netloc + parsed.path)
    return Path(parsed.path)


def create_artifact_store(uri: str, settings: Optional[Settings] = None) -> ArtifactStore:
    """Factory function to create the ArtifactStore for a URI.

    Args:
        uri: Store URI (e.g. "s3://bucket/prefix", "file:///var/lib/archiver")
        settings: Settings providing S3 credentials (default: global settings)

    Raises:
        ValueError: If the URI scheme is not supported
    """
    parsed = urlparse(uri)

    if parsed.scheme == "s3":
        if not parsed.netloc:
            raise ValueError(f"S3 URI has no bucket: {uri}")
        return S3ArtifactStore.from_settings(
            parsed.netloc, parsed.path, settings or get_settings()
        )
    elif parsed.scheme == "file":
        return FileArtifactStore(_file_path(uri))
    elif parsed.scheme == "memory":
        return InMemoryArtifactStore()
    else:
        raise ValueError(
            f"Unsupported storage scheme: {parsed.scheme}. "
            f"Supported: s3://, file://, memory://"
        )
