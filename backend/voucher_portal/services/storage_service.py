"""Storage service abstraction for uploaded documents.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage.
2. **filesystem**: Stores files under ``settings.STORAGE_DIRECTORY`` on disk.

All saved objects return a *relative key* (``namespace/uuid_filename``) that
is persisted on the owning row (proof keys on applications, W9 keys on
vendors, letter PDFs on print queue items).  Retrieval resolves the key
according to the active backend.
"""

from __future__ import annotations

import logging
import uuid
from io import BytesIO
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from voucher_portal.core.config import settings
from voucher_portal.utils.sanitization import safe_filename

logger = logging.getLogger(__name__)


class StorageService:
    """Unified storage service (MinIO or filesystem)."""

    def __init__(self, base_dir: str | None = None) -> None:
        self.backend = (settings.STORAGE_BACKEND or "minio").lower()
        if self.backend == "minio":
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
            self.bucket = settings.MINIO_BUCKET_NAME
            # Ensure bucket exists (idempotent)
            try:
                if not self._client.bucket_exists(self.bucket):
                    self._client.make_bucket(self.bucket)
            except Exception as e:  # pragma: no cover - startup path
                logger.warning(f"[storage] MinIO bucket ensure failed: {e}")
        else:
            self.backend = "filesystem"
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path.resolve()
            self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_full_path(self, relative_path: str) -> Path:
        """Resolve a stored file's full path (filesystem only)."""
        full = (self.base_dir / relative_path).resolve()
        if self.base_dir not in full.parents:
            raise ValueError(f"Invalid storage key: {relative_path}")
        return full

    def save_bytes(self, data: bytes, namespace: str, filename: str, content_type: str | None = None) -> str:
        """Persist ``data`` and return its storage key."""
        if not data:
            raise RuntimeError("Empty upload payload")
        object_name = f"{namespace}/{uuid.uuid4().hex}_{safe_filename(filename)}"

        if self.backend == "minio":
            try:
                self._client.put_object(
                    self.bucket,
                    object_name,
                    BytesIO(data),
                    len(data),
                    content_type=content_type or "application/octet-stream",
                )
            except Exception as e:
                raise RuntimeError(f"MinIO upload failed: {e}")
            logger.info(f"[storage] MinIO object put: {object_name} size={len(data)}")
            return object_name

        file_path = self.get_full_path(object_name)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(data)
        logger.info(f"[storage] FS saved: {file_path} bytes={len(data)}")
        return object_name

    def load(self, key: str) -> bytes:
        """Load raw bytes for a stored object; ``ValueError`` when missing."""
        if self.backend == "minio":
            try:
                resp = self._client.get_object(self.bucket, key)
                try:
                    return resp.read()
                finally:
                    resp.close()
                    resp.release_conn()
            except S3Error as e:
                raise ValueError(f"File not found: {key}") from e
            except Exception as e:
                raise RuntimeError(f"MinIO download failed: {e}")
        try:
            return self.get_full_path(key).read_bytes()
        except FileNotFoundError:
            raise ValueError(f"File not found: {key}")

    def delete(self, key: str | None) -> None:
        """Remove a stored object; missing objects are ignored."""
        if not key:
            return
        if self.backend == "minio":
            try:
                self._client.remove_object(self.bucket, key)
            except S3Error as e:
                logger.warning(f"[storage] MinIO remove failed for {key}: {e}")
            return
        try:
            self.get_full_path(key).unlink()
        except FileNotFoundError:
            pass


def get_storage() -> StorageService:
    return StorageService()


def load_file_from_storage(file_key: str) -> bytes:
    """Standalone loader for background tasks."""
    return get_storage().load(file_key)


# Keys queued on a session; see delete_after_commit / discard_on_rollback.
_DELETE_ON_COMMIT = "storage_delete_on_commit"
_DELETE_ON_ROLLBACK = "storage_delete_on_rollback"


def delete_after_commit(db: AsyncSession, key: str | None) -> None:
    """Remove ``key`` once ``db`` commits; a rollback keeps the object."""
    if key:
        db.info.setdefault(_DELETE_ON_COMMIT, []).append(key)


def discard_on_rollback(db: AsyncSession, key: str | None) -> None:
    """Remove a freshly saved ``key`` if ``db`` rolls back instead of committing."""
    if key:
        db.info.setdefault(_DELETE_ON_ROLLBACK, []).append(key)


def _purge(keys) -> None:
    if not keys:
        return
    storage = get_storage()
    for key in keys:
        try:
            storage.delete(key)
        except Exception as e:
            logger.warning(f"[storage] deferred delete failed for {key}: {e}")


@event.listens_for(Session, "after_commit")
def _purge_after_commit(session: Session) -> None:
    session.info.pop(_DELETE_ON_ROLLBACK, None)
    _purge(session.info.pop(_DELETE_ON_COMMIT, None))


@event.listens_for(Session, "after_soft_rollback")
def _purge_after_rollback(session: Session, previous_transaction) -> None:
    if previous_transaction.nested:
        return
    session.info.pop(_DELETE_ON_COMMIT, None)
    _purge(session.info.pop(_DELETE_ON_ROLLBACK, None))
