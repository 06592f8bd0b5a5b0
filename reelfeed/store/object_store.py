"""Object store contract plus a directory-backed adapter.

Uploads are chunked copies that run on a worker thread, report progress after
every chunk and can be cancelled between chunks. Each stored object has a JSON
sidecar holding its size, content type and custom metadata."""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

from ..config import DEFAULT_CHUNK_SIZE
from ..errors import TransientIOError, UploadCancelled
from ..models import utcnow

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
PART_SUFFIX = ".part"


@dataclass(frozen=True)
class ObjectMetadata:
    key: str
    size: int
    content_type: str
    custom: dict = field(default_factory=dict)
    updated_at: Optional[datetime] = None


class TransferTask:
    """Handle for one in-flight transfer: wait() for the outcome, cancel() to abort."""

    def __init__(self, key: str, run: Callable[["TransferTask"], ObjectMetadata]):
        self.key = key
        self._run = run
        self._cancel = threading.Event()
        self._result: Optional[ObjectMetadata] = None
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(
            target=self._target, name=f"transfer-{key}", daemon=True
        )

    def start(self) -> "TransferTask":
        self._thread.start()
        return self

    def _target(self):
        try:
            self._result = self._run(self)
        except Exception as e:
            self._error = e

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    def cancel(self):
        if not self._cancel.is_set():
            logger.info(f"Cancelling transfer of {self.key}")
            self._cancel.set()

    def wait(self, timeout: Optional[float] = None) -> ObjectMetadata:
        """Block until the transfer finishes. Raises its error if it failed."""
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TransientIOError(f"Transfer of {self.key} timed out")
        if self._error is not None:
            raise self._error
        return self._result


class ObjectStore(ABC):
    """Contract of the remote object storage used by the upload pipeline."""

    @abstractmethod
    def start_upload(
        self,
        local_path: str,
        key: str,
        metadata: dict,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> TransferTask: ...

    @abstractmethod
    def get_metadata(self, key: str) -> ObjectMetadata: ...

    @abstractmethod
    def public_url(self, key: str) -> str: ...


class LocalObjectStore(ObjectStore):
    """Object store rooted in a local directory."""

    def __init__(
        self,
        root_dir: str,
        public_base_url: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.root = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.chunk_size = chunk_size

    def _object_path(self, key: str) -> Path:
        parts = key.strip("/").split("/")
        if not key or any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    def start_upload(
        self,
        local_path: str,
        key: str,
        metadata: dict,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> TransferTask:
        dest = self._object_path(key)

        def run(task: TransferTask) -> ObjectMetadata:
            return self._copy(Path(local_path), dest, key, metadata, on_progress, task)

        return TransferTask(key, run).start()

    def _copy(self, src: Path, dest: Path, key: str, metadata: dict,
              on_progress, task: TransferTask) -> ObjectMetadata:
        part = dest.with_name(dest.name + PART_SUFFIX)
        try:
            total = src.stat().st_size
            dest.parent.mkdir(parents=True, exist_ok=True)
            completed = 0
            with open(src, "rb") as fin, open(part, "wb") as fout:
                while True:
                    if task.cancelled:
                        raise UploadCancelled(f"Transfer of {key} was cancelled")
                    chunk = fin.read(self.chunk_size)
                    if not chunk:
                        break
                    fout.write(chunk)
                    completed += len(chunk)
                    if on_progress:
                        on_progress(completed, total)
            os.replace(part, dest)

            meta = {
                "size": completed,
                "content_type": metadata.get("content_type", "application/octet-stream"),
                "custom": {k: v for k, v in metadata.items() if k != "content_type"},
                "updated_at": utcnow().isoformat(),
            }
            dest.with_name(dest.name + META_SUFFIX).write_text(json.dumps(meta, default=str))
        except UploadCancelled:
            part.unlink(missing_ok=True)
            raise
        except OSError as e:
            part.unlink(missing_ok=True)
            raise TransientIOError(f"Transfer of {key} failed: {e}", e) from e

        logger.debug(f"Stored {key} ({completed} bytes)")
        return self.get_metadata(key)

    def get_metadata(self, key: str) -> ObjectMetadata:
        path = self._object_path(key)
        meta_path = path.with_name(path.name + META_SUFFIX)
        try:
            meta = json.loads(meta_path.read_text())
        except (OSError, ValueError) as e:
            raise TransientIOError(f"No metadata for {key}: {e}", e) from e
        return ObjectMetadata(
            key=key,
            size=meta["size"],
            content_type=meta["content_type"],
            custom=meta.get("custom", {}),
            updated_at=datetime.fromisoformat(meta["updated_at"]) if meta.get("updated_at") else None,
        )

    def public_url(self, key: str) -> str:
        path = self._object_path(key)
        if not path.exists():
            raise TransientIOError(f"Cannot issue URL for missing object {key}")
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(key.strip('/'))}"
        return path.resolve().as_uri()
