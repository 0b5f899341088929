"""
Artifact Store — durable, content-addressed blob storage for uploads

Key layout (server-constructed, never accepted from the client):

    <nonce>/<sha256><ext>

      nonce   fresh uuid4 hex per put(); a re-upload of identical bytes gets a
              new key, so an existing artifact is never overwritten
      sha256  digest of the content; re-verified on every get()
      ext     extension of the declared media type (.pdf, .png, …)

Guarantees:
  - put() returns only once the bytes are durable (local: temp file +
    fsync + atomic rename; S3: PutObject acknowledged).
  - get() of an unknown key raises ArtifactNotFoundError.
  - get() of bytes whose digest no longer matches the key raises
    ArtifactCorruptedError.

Backends:
  LocalArtifactStore  filesystem under STORAGE_ROOT (dev / single node)
  S3ArtifactStore     aioboto3, optional SSE-KMS
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import tempfile
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from docchat.core.config import Settings
from docchat.core.errors import InternalError, NotFoundError

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[0-9a-f]{32}/[0-9a-f]{64}(\.[a-z0-9]{1,8})?$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ArtifactNotFoundError(NotFoundError):
    """No artifact is stored under the requested key."""


class ArtifactCorruptedError(InternalError):
    """Stored bytes no longer match the digest embedded in their key."""


class ArtifactStoreError(InternalError):
    """The storage backend failed (I/O error, S3 error)."""


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------

def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def build_key(data: bytes, extension: str = "") -> str:
    """Return a fresh storage key for *data*."""
    ext = extension.lower() if extension.startswith(".") else ""
    return f"{uuid.uuid4().hex}/{sha256_hex(data)}{ext}"


def validate_key(key: str) -> str:
    """
    Reject anything that is not a key this store could have produced.
    Covers absolute paths, '..' segments and backslashes in one check.
    """
    if not _KEY_RE.match(key or ""):
        raise ArtifactNotFoundError(f"Invalid artifact key: {key!r}")
    return key


def digest_from_key(key: str) -> str:
    name = key.split("/", 1)[1]
    return name.split(".", 1)[0]


def _verify(key: str, data: bytes) -> bytes:
    expected = digest_from_key(key)
    actual = sha256_hex(data)
    if actual != expected:
        logger.error("Artifact checksum mismatch | key=%s actual=%s", key, actual)
        raise ArtifactCorruptedError(f"Artifact {key} failed checksum verification")
    return data


# ---------------------------------------------------------------------------
# Abstract store
# ---------------------------------------------------------------------------

class ArtifactStore(ABC):
    """Durable blob storage addressed by server-generated keys."""

    @abstractmethod
    async def put(self, data: bytes, extension: str = "") -> str:
        """Persist *data* and return its storage key once durable."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Return the exact bytes stored under *key*."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the artifact. Deleting a missing key is a no-op."""


# ---------------------------------------------------------------------------
# Local filesystem backend
# ---------------------------------------------------------------------------

class LocalArtifactStore(ArtifactStore):
    """Filesystem-backed store. Blocking I/O runs in worker threads."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        return self._root / validate_key(key)

    async def put(self, data: bytes, extension: str = "") -> str:
        key = build_key(data, extension)
        try:
            await asyncio.to_thread(self._write_sync, self._path(key), data)
        except OSError as exc:
            logger.exception("Artifact write failed | key=%s", key)
            raise ArtifactStoreError(f"Failed to store artifact: {exc}") from exc
        logger.info("Artifact stored | backend=local key=%s size=%d", key, len(data))
        return key

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(f"Artifact not found: {key}") from exc
        except OSError as exc:
            raise ArtifactStoreError(f"Failed to read artifact: {exc}") from exc
        return _verify(key, data)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._delete_sync, path)
        except OSError as exc:
            raise ArtifactStoreError(f"Failed to delete artifact: {exc}") from exc
        logger.info("Artifact deleted | backend=local key=%s", key)

    @staticmethod
    def _write_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @staticmethod
    def _delete_sync(path: Path) -> None:
        path.unlink(missing_ok=True)
        try:
            path.parent.rmdir()
        except OSError:
            pass   # directory not empty or already gone


# ---------------------------------------------------------------------------
# S3 backend
# ---------------------------------------------------------------------------

class S3ArtifactStore(ArtifactStore):
    """
    aioboto3-backed store. Every object lives under <S3_PREFIX>/<key>.

    SSE-KMS is applied on every PutObject when S3_KMS_KEY_ARN is set;
    otherwise the bucket default encryption applies.
    """

    def __init__(
        self,
        bucket:      str,
        prefix:      str = "artifacts",
        region:      str = "us-east-1",
        kms_key_arn: str = "",
        session:     aioboto3.Session | None = None,
    ) -> None:
        self._bucket  = bucket
        self._prefix  = prefix.strip("/")
        self._region  = region
        self._kms_key = kms_key_arn
        self._session = session or aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    def _object_key(self, key: str) -> str:
        validate_key(key)
        return f"{self._prefix}/{key}" if self._prefix else key

    def _sse_params(self) -> dict:
        if not self._kms_key:
            return {}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key}

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(self, data: bytes, extension: str = "") -> str:
        key = build_key(data, extension)
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=self._object_key(key),
                    Body=data,
                    Metadata={"sha256": digest_from_key(key)},
                    **self._sse_params(),
                )
        except (ClientError, BotoCoreError) as exc:
            logger.exception("S3 upload failed | key=%s", key)
            raise ArtifactStoreError(f"Failed to store artifact: {exc}") from exc

        logger.info("Artifact stored | backend=s3 bucket=%s key=%s size=%d", self._bucket, key, len(data))
        return key

    async def get(self, key: str) -> bytes:
        object_key = self._object_key(key)
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=object_key)
                data = await resp["Body"].read()
        except ClientError as exc:
            code = exc.response["Error"]["Code"]
            if code in ("NoSuchKey", "404"):
                raise ArtifactNotFoundError(f"Artifact not found: {key}") from exc
            raise ArtifactStoreError(f"Failed to read artifact: {exc}") from exc
        except BotoCoreError as exc:
            raise ArtifactStoreError(f"Failed to read artifact: {exc}") from exc
        return _verify(key, data)

    async def delete(self, key: str) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=self._object_key(key))
        except (ClientError, BotoCoreError) as exc:
            raise ArtifactStoreError(f"Failed to delete artifact: {exc}") from exc
        logger.info("Artifact deleted | backend=s3 key=%s", key)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_artifact_store(settings: Settings) -> ArtifactStore:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalArtifactStore(settings.storage_root)
    if backend == "s3":
        return S3ArtifactStore(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.aws_region,
            kms_key_arn=settings.s3_kms_key_arn,
        )
    raise ValueError(f"Unknown STORAGE_BACKEND {settings.storage_backend!r} (expected 'local' or 's3')")
