"""Error taxonomy shared by the feed, comments and upload engines.

Validation and auth errors are raised before any network call and are never
retried. Transient I/O errors are retried by the upload pipeline and surface
as RetryExhausted once the attempt set is used up. Decode errors are dropped
per document and never reach callers."""

from __future__ import annotations

from typing import Optional


class ReelfeedError(Exception):
    """Base class for all reelfeed errors."""


class ValidationError(ReelfeedError):
    """Bad input: missing/oversized/wrong-type file, blank caption, long comment."""


class AuthError(ReelfeedError):
    """No signed-in user, or the user may not act on this resource."""


class TransientIOError(ReelfeedError):
    """A remote read, write or transfer failed in a way worth retrying."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RetryExhausted(ReelfeedError):
    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"Upload failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(ReelfeedError):
    """The media landed in storage but the metadata record could not be written."""

    def __init__(self, message: str, video_id: str, storage_key: str,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.video_id = video_id
        self.storage_key = storage_key
        self.cause = cause


class DecodeError(ReelfeedError):
    """A stored document does not match the expected record shape."""


class UploadCancelled(ReelfeedError):
    """The transfer was cancelled, usually because a newer upload started."""


class InvalidStorageKeyError(ReelfeedError):
    """A generated video id does not match the UUID4 storage-key pattern."""


class StoreError(ReelfeedError):
    """Document store contract violation."""


class DocumentNotFoundError(StoreError):
    def __init__(self, path: str):
        super().__init__(f"No document at {path}")
        self.path = path
