from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from ..auth import AuthSession
from ..config import (
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_CAPTION,
    DEFAULT_MAX_DURATION_SECONDS,
    DEFAULT_MAX_FILE_BYTES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_URL_RETRIES,
)
from ..errors import (
    PersistenceError,
    RetryExhausted,
    TransientIOError,
    UploadCancelled,
    ValidationError,
)
from ..models import (
    PROCESSING_STAGES,
    ProcessingMetadata,
    UploadAttempt,
    VideoRecord,
    VideoStatus,
    utcnow,
)
from ..store.document_store import DocumentStore
from ..store.object_store import ObjectStore, TransferTask
from ..utils.retry import backoff_delay, retry_with_backoff
from .validation import (
    ValidatedFile,
    check_video_id,
    generate_video_id,
    probe_duration,
    validate_upload,
)

logger = logging.getLogger(__name__)

URL_RETRY_BASE_DELAY = 1.0


def clamp_fraction(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return max(0.0, min(1.0, completed / total))


class UploadPipeline:
    """Validates a local video, transfers it, and publishes its metadata record.

    One video id is generated per logical upload and reused by every retry.
    Only one transfer is in flight per pipeline: starting a new upload cancels
    the previous one, which then ends with UploadCancelled.

    Failures:
        ValidationError / AuthError: raised before any network call.
        TransientIOError: retried with backoff_base ** attempt second sleeps,
            then RetryExhausted.
        PersistenceError: the metadata write failed after the media landed;
            not retried.
    """

    def __init__(
        self,
        store: DocumentStore,
        object_store: ObjectStore,
        session: AuthSession,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        max_duration_seconds: Optional[float] = DEFAULT_MAX_DURATION_SECONDS,
        allowed_extensions=tuple(DEFAULT_ALLOWED_EXTENSIONS),
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        url_retries: int = DEFAULT_URL_RETRIES,
        default_caption: str = DEFAULT_CAPTION,
        probe: Callable[[str], float] = probe_duration,
        id_factory: Callable[[], str] = generate_video_id,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.object_store = object_store
        self.session = session
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_file_bytes = max_file_bytes
        self.max_duration_seconds = max_duration_seconds
        self.allowed_extensions = tuple(allowed_extensions)
        self.settle_delay = settle_delay
        self.url_retries = url_retries
        self.default_caption = default_caption
        self.probe = probe
        self.id_factory = id_factory
        self.sleep = sleep

        self._lock = threading.Lock()
        self._active_transfer: Optional[TransferTask] = None
        self._current_upload = 0
        self._upload_seq = 0

    @classmethod
    def from_config(cls, upload_cfg: dict, store: DocumentStore,
                    object_store: ObjectStore, session: AuthSession, **kwargs) -> "UploadPipeline":
        """Build from the dict returned by config.get_upload_config()."""
        return cls(
            store,
            object_store,
            session,
            max_retries=upload_cfg["max_retries"],
            backoff_base=upload_cfg["backoff_base"],
            max_file_bytes=upload_cfg["max_file_bytes"],
            max_duration_seconds=upload_cfg["max_duration_seconds"],
            allowed_extensions=upload_cfg["allowed_extensions"],
            settle_delay=upload_cfg["settle_delay"],
            url_retries=upload_cfg["url_retries"],
            default_caption=upload_cfg["default_caption"],
            **kwargs,
        )

    @property
    def is_uploading(self) -> bool:
        with self._lock:
            return self._active_transfer is not None

    def cancel(self):
        """Cancel the in-flight upload, if any."""
        with self._lock:
            self._current_upload = 0
            if self._active_transfer is not None:
                self._active_transfer.cancel()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(
        self,
        file_path: str,
        caption: Optional[str] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> str:
        """Upload a video and publish its record. Returns the public media URL."""
        user_id = self.session.require_user()

        if caption is None:
            caption = self.default_caption
        elif not caption.strip():
            raise ValidationError("Please add a caption")
        caption = caption.strip()

        validated = validate_upload(
            file_path,
            allowed_extensions=self.allowed_extensions,
            max_file_bytes=self.max_file_bytes,
            max_duration_seconds=self.max_duration_seconds,
            probe=self.probe,
        )

        attempt = UploadAttempt(
            file_path=str(validated.path),
            video_id=check_video_id(self.id_factory()),
            caption=caption,
        )
        key = f"videos/{user_id}/{attempt.video_id}.{validated.extension}"

        with self._lock:
            self._upload_seq += 1
            token = self._upload_seq
            self._current_upload = token
            if self._active_transfer is not None:
                logger.info("New upload started; cancelling the previous transfer")
                self._active_transfer.cancel()

        logger.info(f"Uploading {validated.path.name} as {attempt.video_id} ({validated.size} bytes)")

        while attempt.attempt < self.max_retries:
            attempt.attempt += 1
            try:
                return self._run_attempt(attempt, validated, user_id, key, token, on_progress)
            except TransientIOError as e:
                attempt.last_error = e
                logger.warning(
                    f"Upload attempt {attempt.attempt}/{self.max_retries} "
                    f"for {attempt.video_id} failed: {e}"
                )
                if attempt.attempt >= self.max_retries:
                    break
                delay = backoff_delay(attempt.attempt, self.backoff_base)
                logger.info(f"Retrying upload {attempt.video_id} in {delay:.1f}s")
                self.sleep(delay)

        logger.error(f"Upload {attempt.video_id} failed after {attempt.attempt} attempts")
        raise RetryExhausted(attempt.attempt, attempt.last_error)

    def _run_attempt(self, attempt: UploadAttempt, validated: ValidatedFile,
                     user_id: str, key: str, token: int, on_progress) -> str:
        uploaded_at = utcnow()
        metadata = {
            "content_type": validated.content_type,
            "video_id": attempt.video_id,
            "uploader_id": user_id,
            "upload_attempt": attempt.attempt,
            "uploaded_at": uploaded_at.isoformat(),
            "stages": {stage: "pending" for stage in PROCESSING_STAGES},
        }

        def forward(completed: int, total: int):
            if on_progress is not None:
                on_progress(clamp_fraction(completed, total))

        with self._lock:
            if token != self._current_upload:
                raise UploadCancelled(f"Upload {attempt.video_id} was superseded")
            task = self.object_store.start_upload(attempt.file_path, key, metadata, forward)
            self._active_transfer = task

        try:
            task.wait()
        finally:
            with self._lock:
                if self._active_transfer is task:
                    self._active_transfer = None

        if self.settle_delay:
            self.sleep(self.settle_delay)
        stored = self.object_store.get_metadata(key)
        if stored.size != validated.size:
            raise TransientIOError(
                f"Stored object {key} is {stored.size} bytes, expected {validated.size}"
            )

        url = self._issue_url(key)
        self._commit_record(attempt, validated, user_id, key, url, stored.content_type, uploaded_at)
        logger.info(f"Published video {attempt.video_id} on attempt {attempt.attempt}")
        return url

    def _issue_url(self, key: str) -> str:
        @retry_with_backoff(
            max_retries=self.url_retries,
            base_delay=URL_RETRY_BASE_DELAY,
            sleep=self.sleep,
        )
        def issue():
            return self.object_store.public_url(key)

        return issue()

    def _commit_record(self, attempt: UploadAttempt, validated: ValidatedFile, user_id: str,
                       key: str, url: str, content_type: str, uploaded_at) -> None:
        record = VideoRecord(
            id=attempt.video_id,
            uploader_id=user_id,
            title=attempt.caption,
            media_url=url,
            status=VideoStatus.PROCESSING,
            processing=ProcessingMetadata(
                content_type=content_type,
                original_filename=validated.path.name,
                original_size=validated.size,
                upload_attempt=attempt.attempt,
                uploaded_at=uploaded_at,
            ),
            upload_date=uploaded_at,
        )
        try:
            self.store.set(f"videos/{attempt.video_id}", record.to_document())
        except Exception as e:
            logger.error(f"Stored {key} but could not write its record: {e}")
            raise PersistenceError(
                f"Video uploaded but its record could not be saved: {e}",
                video_id=attempt.video_id,
                storage_key=key,
                cause=e,
            ) from e
