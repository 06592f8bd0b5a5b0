"""Shared test fixtures for reelfeed tests."""
from __future__ import annotations

import pytest

from reelfeed.auth import AuthSession
from reelfeed.models import PROCESSING_STAGES
from reelfeed.store.document_store import SQLiteDocumentStore
from reelfeed.store.object_store import LocalObjectStore
from reelfeed.upload.pipeline import UploadPipeline


def video_doc(uploader="bob", score=1.0, status="processed", **overrides) -> dict:
    """A well-formed video document as the backend would store it."""
    doc = {
        "uploader_id": uploader,
        "title": f"Video scoring {score}",
        "media_url": "https://cdn.test/videos/x.mp4",
        "thumbnail_url": None,
        "status": status,
        "view_count": 100,
        "like_count": 10,
        "comment_count": 0,
        "total_watch_time": 900.0,
        "average_watch_time": 9.0,
        "completion_rate": 0.5,
        "rewatch_rate": 0.1,
        "transcript": "",
        "summary": "",
        "engagement_score": score,
        "tags": ["test"],
        "processing": {
            "content_type": "video/mp4",
            "original_filename": "x.mp4",
            "original_size": 1024,
            "stages": {s: "pending" for s in PROCESSING_STAGES},
            "upload_attempt": 1,
            "uploaded_at": "2024-01-01T00:00:00+00:00",
        },
        "upload_date": "2024-01-01T00:00:00+00:00",
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def store(tmp_path):
    """A SQLite document store in a temp directory."""
    s = SQLiteDocumentStore(str(tmp_path / "test.db"))
    yield s
    s.close()


@pytest.fixture
def objects(tmp_path):
    """A local object store that issues https URLs."""
    return LocalObjectStore(
        str(tmp_path / "objects"),
        public_base_url="https://cdn.test",
        chunk_size=1024,
    )


@pytest.fixture
def session():
    """A session with alice signed in."""
    return AuthSession("alice")


@pytest.fixture
def add_video(store):
    """Insert a video document: add_video("v01", score=3.0, status="processed")."""

    def _add(video_id, **kwargs):
        store.set(f"videos/{video_id}", video_doc(**kwargs))
        return video_id

    return _add


@pytest.fixture
def seeded_store(store, add_video):
    """Twelve visible videos (v01 scores 12 ... v12 scores 1) plus hidden ones."""
    for i in range(1, 13):
        add_video(f"v{i:02d}", score=float(13 - i))
    add_video("hidden_failed", score=100.0, status="failed")
    add_video("hidden_pending", score=99.0, status="pending")
    return store


@pytest.fixture
def video_file(tmp_path):
    """A small .mp4 file (the bytes aren't real video; probing is stubbed)."""
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + bytes(range(256)) * 20)
    return path


@pytest.fixture
def sleeps():
    """Records sleep durations instead of sleeping."""
    return []


@pytest.fixture
def pipeline(store, objects, session, sleeps):
    """An UploadPipeline with stubbed probing and no real sleeps."""
    return UploadPipeline(
        store,
        objects,
        session,
        probe=lambda path: 30.0,
        sleep=sleeps.append,
    )
