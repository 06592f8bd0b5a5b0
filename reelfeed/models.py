from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import DecodeError

PROCESSING_STAGES = ("transcoding", "thumbnail", "transcription", "analytics")


class VideoStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class FeedTab(int, enum.Enum):
    FOLLOWING = 0
    FOR_YOU = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise DecodeError(f"Not a timestamp: {value!r}")


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _number(data: dict, key: str, kind=int):
    value = data.get(key, 0)
    if value is None:
        return kind(0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"Field '{key}' is not numeric: {value!r}")
    return kind(value)


@dataclass(frozen=True)
class ProcessingMetadata:
    content_type: str
    original_filename: str
    original_size: int
    stages: dict = field(default_factory=lambda: {s: "pending" for s in PROCESSING_STAGES})
    upload_attempt: int = 1
    uploaded_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "content_type": self.content_type,
            "original_filename": self.original_filename,
            "original_size": self.original_size,
            "stages": dict(self.stages),
            "upload_attempt": self.upload_attempt,
            "uploaded_at": _format_datetime(self.uploaded_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessingMetadata":
        if not isinstance(data, dict):
            raise DecodeError(f"Processing metadata is not a mapping: {data!r}")
        try:
            return cls(
                content_type=data["content_type"],
                original_filename=data["original_filename"],
                original_size=_number(data, "original_size"),
                stages=dict(data.get("stages") or {}),
                upload_attempt=_number(data, "upload_attempt") or 1,
                uploaded_at=_parse_datetime(data.get("uploaded_at")),
            )
        except (KeyError, ValueError) as e:
            raise DecodeError(f"Bad processing metadata: {e}") from e


@dataclass(frozen=True)
class VideoRecord:
    """A video document under videos/{id}.

    engagement_score is written by the backend analytics job; the client only
    reads it for ordering.
    """

    id: str
    uploader_id: str
    title: str
    media_url: str
    status: VideoStatus = VideoStatus.PROCESSING
    thumbnail_url: Optional[str] = None
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    total_watch_time: float = 0.0
    average_watch_time: float = 0.0
    completion_rate: float = 0.0
    rewatch_rate: float = 0.0
    transcript: str = ""
    summary: str = ""
    engagement_score: float = 0.0
    tags: tuple = ()
    processing: Optional[ProcessingMetadata] = None
    upload_date: Optional[datetime] = None

    def to_document(self) -> dict:
        return {
            "uploader_id": self.uploader_id,
            "title": self.title,
            "media_url": self.media_url,
            "thumbnail_url": self.thumbnail_url,
            "status": self.status.value,
            "view_count": self.view_count,
            "like_count": self.like_count,
            "comment_count": self.comment_count,
            "total_watch_time": self.total_watch_time,
            "average_watch_time": self.average_watch_time,
            "completion_rate": self.completion_rate,
            "rewatch_rate": self.rewatch_rate,
            "transcript": self.transcript,
            "summary": self.summary,
            "engagement_score": self.engagement_score,
            "tags": list(self.tags),
            "processing": self.processing.to_dict() if self.processing else None,
            "upload_date": _format_datetime(self.upload_date),
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Any) -> "VideoRecord":
        """Decode a stored document. Raises DecodeError on malformed data."""
        if not isinstance(data, dict):
            raise DecodeError(f"Video {doc_id} is not a mapping")
        try:
            status = VideoStatus(data.get("status", VideoStatus.PROCESSING.value))
            processing = data.get("processing")
            tags = data.get("tags") or []
            if not isinstance(tags, list):
                raise DecodeError(f"Video {doc_id} tags is not a list")
            return cls(
                id=doc_id,
                uploader_id=data["uploader_id"],
                title=data.get("title") or "",
                media_url=data["media_url"],
                status=status,
                thumbnail_url=data.get("thumbnail_url"),
                view_count=_number(data, "view_count"),
                like_count=_number(data, "like_count"),
                comment_count=_number(data, "comment_count"),
                total_watch_time=_number(data, "total_watch_time", float),
                average_watch_time=_number(data, "average_watch_time", float),
                completion_rate=_number(data, "completion_rate", float),
                rewatch_rate=_number(data, "rewatch_rate", float),
                transcript=data.get("transcript") or "",
                summary=data.get("summary") or "",
                engagement_score=_number(data, "engagement_score", float),
                tags=tuple(tags),
                processing=ProcessingMetadata.from_dict(processing) if processing else None,
                upload_date=_parse_datetime(data.get("upload_date")),
            )
        except KeyError as e:
            raise DecodeError(f"Video {doc_id} missing field {e}") from e
        except ValueError as e:
            raise DecodeError(f"Video {doc_id}: {e}") from e


@dataclass(frozen=True)
class CommentRecord:
    id: str
    video_id: str
    author_id: str
    text: str
    created_at: datetime
    like_count: int = 0
    edited: bool = False
    edited_at: Optional[datetime] = None

    def to_document(self) -> dict:
        return {
            "author_id": self.author_id,
            "text": self.text,
            "created_at": _format_datetime(self.created_at),
            "like_count": self.like_count,
            "edited": self.edited,
            "edited_at": _format_datetime(self.edited_at),
        }

    @classmethod
    def from_document(cls, video_id: str, doc_id: str, data: Any) -> "CommentRecord":
        if not isinstance(data, dict):
            raise DecodeError(f"Comment {doc_id} is not a mapping")
        try:
            created_at = _parse_datetime(data["created_at"])
            if created_at is None:
                raise DecodeError(f"Comment {doc_id} has no timestamp")
            return cls(
                id=doc_id,
                video_id=video_id,
                author_id=data["author_id"],
                text=data["text"],
                created_at=created_at,
                like_count=_number(data, "like_count"),
                edited=bool(data.get("edited", False)),
                edited_at=_parse_datetime(data.get("edited_at")),
            )
        except KeyError as e:
            raise DecodeError(f"Comment {doc_id} missing field {e}") from e
        except ValueError as e:
            raise DecodeError(f"Comment {doc_id}: {e}") from e


@dataclass
class UploadAttempt:
    """Ephemeral state for one logical upload (an attempt set)."""

    file_path: str
    video_id: str
    caption: str
    attempt: int = 0
    last_error: Optional[BaseException] = None


@dataclass(frozen=True)
class FeedState:
    items: tuple = ()
    cursor_id: Optional[str] = None
    loading: bool = False
    loading_more: bool = False
    exhausted: bool = False
    last_error: Optional[BaseException] = None
    active_tab: FeedTab = FeedTab.FOR_YOU


@dataclass(frozen=True)
class CommentsState:
    comments: tuple = ()
    loading: bool = False
    submitting: bool = False
    last_error: Optional[BaseException] = None


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    username: str
    email: str
    bio: Optional[str] = None
    role: str = "user"
    registered_at: Optional[datetime] = None
