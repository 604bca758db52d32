"""
Blob storage for Firebase Storage buckets and in-memory testing.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol

from firebase_admin import storage
from google.cloud.exceptions import NotFound

from firekit.core.audit import ANONYMOUS, iso_timestamp
from firekit.errors import BackingStoreError, NotInitializedError, ValidationError
from firekit.services.backing_store import join_path

if TYPE_CHECKING:
    from firekit.services.firebase_app import FirebaseConnection

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[int, int], None]
ProgressCallback = Callable[[float], None]

DEFAULT_CHUNK_SIZE = 256 * 1024
SIGNED_URL_TTL = timedelta(hours=1)


@dataclass
class UploadFile:
    name: str
    data: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str, content_type: Optional[str] = None) -> "UploadFile":
        src = Path(path)
        guessed, _ = mimetypes.guess_type(src.name)
        return cls(
            name=src.name,
            data=src.read_bytes(),
            content_type=content_type or guessed or "application/octet-stream",
        )

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class BlobInfo:
    name: str
    path: str
    url: str
    content_type: Optional[str] = None
    size: int = 0
    time_created: Optional[str] = None
    custom_metadata: Dict[str, str] = field(default_factory=dict)


class BlobStore(Protocol):
    """Defines the operations the storage service needs from a bucket."""

    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: Dict[str, str],
        on_chunk: ChunkCallback,
    ) -> BlobInfo:
        ...

    def delete(self, path: str) -> None:
        ...

    def list_paths(self, prefix: str) -> List[str]:
        ...

    def describe(self, path: str) -> BlobInfo:
        ...


def _folder(prefix: str) -> str:
    folder = join_path(prefix)
    return f"{folder}/" if folder else ""


@dataclass
class InMemoryBlobStore:
    """Test double for bucket interactions."""

    base_url: str = "https://example.test/storage"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    blobs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: Dict[str, str],
        on_chunk: ChunkCallback,
    ) -> BlobInfo:
        total = len(data)
        sent = 0
        while sent < total:
            sent = min(total, sent + self.chunk_size)
            on_chunk(sent, total)
        if total == 0:
            on_chunk(0, 0)

        key = join_path(path)
        self.blobs[key] = {
            "data": bytes(data),
            "content_type": content_type,
            "metadata": dict(metadata),
            "time_created": iso_timestamp(),
        }
        return self.describe(key)

    def delete(self, path: str) -> None:
        key = join_path(path)
        if key not in self.blobs:
            raise NotFound(f"No object exists at {key}")
        del self.blobs[key]

    def list_paths(self, prefix: str) -> List[str]:
        folder = _folder(prefix)
        return sorted(
            key for key in self.blobs if key.startswith(folder) and "/" not in key[len(folder):]
        )

    def describe(self, path: str) -> BlobInfo:
        key = join_path(path)
        if key not in self.blobs:
            raise NotFound(f"No object exists at {key}")
        blob = self.blobs[key]
        return BlobInfo(
            name=key.rsplit("/", 1)[-1],
            path=key,
            url=f"{self.base_url}/{key}",
            content_type=blob["content_type"],
            size=len(blob["data"]),
            time_created=blob["time_created"],
            custom_metadata=dict(blob["metadata"]),
        )


class _ProgressReader(io.BytesIO):
    def __init__(self, data: bytes, on_chunk: ChunkCallback) -> None:
        super().__init__(data)
        self._total = len(data)
        self._on_chunk = on_chunk

    def read(self, size: Optional[int] = -1) -> bytes:
        chunk = super().read(size)
        if chunk or not self._total:
            self._on_chunk(self.tell(), self._total)
        return chunk


class FirebaseBlobStore:
    """Adapter over the google-cloud-storage bucket behind ``firebase_admin.storage``."""

    def __init__(self, app: Any = None, bucket_name: Optional[str] = None, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.bucket = storage.bucket(bucket_name, app=app)
        self.chunk_size = chunk_size

    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        metadata: Dict[str, str],
        on_chunk: ChunkCallback,
    ) -> BlobInfo:
        # Resumable upload reads chunk_size bytes at a time.
        blob = self.bucket.blob(join_path(path), chunk_size=self.chunk_size)
        blob.metadata = metadata
        blob.upload_from_file(_ProgressReader(data, on_chunk), size=len(data), content_type=content_type)
        blob.reload()
        return self._info(blob)

    def delete(self, path: str) -> None:
        self.bucket.blob(join_path(path)).delete()

    def list_paths(self, prefix: str) -> List[str]:
        return [blob.name for blob in self.bucket.list_blobs(prefix=_folder(prefix), delimiter="/")]

    def describe(self, path: str) -> BlobInfo:
        blob = self.bucket.get_blob(join_path(path))
        if blob is None:
            raise NotFound(f"No object exists at {path}")
        return self._info(blob)

    def _info(self, blob: Any) -> BlobInfo:
        created = blob.time_created
        return BlobInfo(
            name=blob.name.rsplit("/", 1)[-1],
            path=blob.name,
            url=blob.generate_signed_url(expiration=SIGNED_URL_TTL, version="v4"),
            content_type=blob.content_type,
            size=int(blob.size or 0),
            time_created=iso_timestamp(created) if isinstance(created, datetime) else None,
            custom_metadata=dict(blob.metadata or {}),
        )


class StorageService:
    def __init__(self, connection: Optional["FirebaseConnection"]) -> None:
        self.connection = connection

    def _blob_store(self) -> BlobStore:
        if self.connection is None or not self.connection.is_initialized:
            raise NotInitializedError()
        if self.connection.blob_store is None:
            raise NotInitializedError("Firebase storage not configured")
        return self.connection.blob_store

    async def upload(
        self,
        file: UploadFile,
        path: str,
        metadata: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
        uploaded_by: str = ANONYMOUS,
    ) -> Dict[str, Any]:
        blobs = self._blob_store()
        if not path or not path.strip("/"):
            raise ValidationError("Storage path is required")

        custom_metadata = {
            **(metadata or {}),
            "uploadedBy": uploaded_by,
            "uploadedAt": iso_timestamp(),
        }
        loop = asyncio.get_running_loop()

        def on_chunk(transferred: int, total: int) -> None:
            progress = (transferred / total) * 100 if total else 100.0
            logger.debug("Upload of %s is %.1f%% done", path, progress)
            if on_progress is not None:
                loop.call_soon_threadsafe(on_progress, progress)

        try:
            info = await asyncio.to_thread(
                blobs.upload, path, file.data, file.content_type, custom_metadata, on_chunk
            )
        except Exception as exc:
            logger.error("Upload of %s failed: %s", path, exc)
            raise BackingStoreError("upload", path, exc) from exc

        return {
            "url": info.url,
            "path": path,
            "name": file.name,
            "type": file.content_type,
            "size": file.size,
            "metadata": info.custom_metadata,
        }

    async def delete(self, path: str) -> None:
        blobs = self._blob_store()
        try:
            await asyncio.to_thread(blobs.delete, path)
        except Exception as exc:
            raise BackingStoreError("delete", path, exc) from exc

    async def list(self, path: str = "") -> List[Dict[str, Any]]:
        blobs = self._blob_store()
        try:
            paths = await asyncio.to_thread(blobs.list_paths, path)
        except Exception as exc:
            raise BackingStoreError("list", path, exc) from exc
        return list(await asyncio.gather(*(self._describe(blobs, item) for item in paths)))

    async def _describe(self, blobs: BlobStore, item_path: str) -> Dict[str, Any]:
        try:
            info = await asyncio.to_thread(blobs.describe, item_path)
        except Exception:
            logger.error("Error getting metadata for %s", item_path, exc_info=True)
            return {
                "name": item_path.rsplit("/", 1)[-1],
                "path": item_path,
                "error": "Failed to load metadata",
            }
        return {
            "name": info.name,
            "path": info.path,
            "url": info.url,
            "contentType": info.content_type,
            "size": info.size,
            "timeCreated": info.time_created,
            "customMetadata": info.custom_metadata,
        }
