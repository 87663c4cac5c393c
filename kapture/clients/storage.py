"""Filesystem-backed object store.

Keys are relative paths under ``root_dir``. In the default deployment the
root is the volume shared with the extraction worker, which writes each job's
output to ``downloads/<job_id>/``; a retained artifact's key therefore points
straight at the worker-produced file.
"""

import asyncio
import contextlib
import mimetypes
import os
import secrets
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import structlog

from kapture.clients.base import ObjectMetadata, ObjectStorage, StoredObject, UploadOptions
from kapture.clients.exceptions import StorageOperationError
from kapture.core.circuit_breaker import CircuitBreaker
from kapture.core.validation import sanitize_filename

logger = structlog.get_logger(__name__)

DEPENDENCY = "storage"

T = TypeVar("T")


class LocalObjectStorage(ObjectStorage):
    """ObjectStorage over a local directory tree."""

    def __init__(
        self,
        root_dir: str,
        breaker: Optional[CircuitBreaker] = None,
        request_timeout: float = 10.0,
        public_base_url: str = "/api/v1/files",
    ) -> None:
        """Initialize the store.

        Args:
            root_dir: Directory holding all objects.
            breaker: Circuit breaker scoped to storage.
            request_timeout: Deadline for one storage operation in seconds.
            public_base_url: Prefix used to build object URLs.
        """
        self.root = Path(root_dir)
        self.request_timeout = request_timeout
        self.public_base_url = public_base_url.rstrip("/")
        self._breaker = breaker or CircuitBreaker(DEPENDENCY)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def initialize(self) -> None:
        """Create the root directory and verify it is writable.

        Raises:
            StorageOperationError: If the directory is missing and cannot be
                created, or is not writable.
        """
        try:
            if not self.root.exists():
                self.root.mkdir(parents=True, exist_ok=True)
                logger.info("storage_root_created", path=str(self.root))

            marker = self.root / f".write_test_{os.getpid()}_{uuid.uuid4().hex}"
            marker.touch()
            marker.unlink(missing_ok=True)
        except OSError as e:
            raise StorageOperationError(f"Storage root is not usable: {e}") from e

        logger.info("storage_initialized", root=str(self.root), writable=True)

    def is_writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    def generate_key(self, owner_id: str, name: str, folder: str = "media") -> str:
        """Build a unique key: ``<folder>/<owner>/<millis>_<random>_<name>``."""
        stamp = int(time.time() * 1000)
        return f"{folder}/{sanitize_filename(owner_id)}/{stamp}_{secrets.token_hex(4)}_{sanitize_filename(name)}"

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def upload(
        self,
        owner_id: str,
        data: bytes,
        name: str,
        options: Optional[UploadOptions] = None,
    ) -> StoredObject:
        options = options or UploadOptions()
        key = self.generate_key(owner_id, name, options.folder)
        path = self._resolve(key)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await self._run(write, key)
        logger.info("storage_object_uploaded", key=key, size=len(data), owner_id=owner_id)
        return StoredObject(key=key, url=self.url_for(key), size=len(data))

    async def delete(self, key: str) -> None:
        path = self._resolve(key)

        def remove() -> None:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
            # Drop the per-job folder once its last file is gone
            parent = path.parent
            if parent != self.root:
                with contextlib.suppress(OSError):
                    parent.rmdir()

        await self._run(remove, key)
        logger.debug("storage_object_deleted", key=key)

    async def exists(self, key: str) -> bool:
        path = self._resolve(key)
        return await self._run(path.exists, key)

    async def head(self, key: str) -> Optional[ObjectMetadata]:
        path = self._resolve(key)

        def stat() -> Optional[ObjectMetadata]:
            if not path.is_file():
                return None
            st = path.stat()
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            return ObjectMetadata(
                size=st.st_size,
                content_type=content_type,
                last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            )

        return await self._run(stat, key)

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise StorageOperationError(f"Invalid storage key: {key!r}", key=key)
        return self.root / key

    async def _run(self, func: Callable[..., T], key: str, *args: Any) -> T:
        return await self._breaker.call(self._io, func, key, *args)

    async def _io(self, func: Callable[..., T], key: str, *args: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StorageOperationError(f"Storage operation timed out for {key}", key=key) from e
        except OSError as e:
            raise StorageOperationError(f"Storage operation failed for {key}: {e}", key=key) from e
