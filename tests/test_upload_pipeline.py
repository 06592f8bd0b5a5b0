"""Tests for the upload pipeline: retries, progress, commit and cancellation."""
from __future__ import annotations

import threading

import pytest

from reelfeed.auth import AuthSession
from reelfeed.config import get_upload_config
from reelfeed.errors import (
    AuthError,
    InvalidStorageKeyError,
    PersistenceError,
    RetryExhausted,
    TransientIOError,
    UploadCancelled,
    ValidationError,
)
from reelfeed.models import VideoRecord, VideoStatus
from reelfeed.store.object_store import LocalObjectStore, TransferTask
from reelfeed.upload.pipeline import UploadPipeline, clamp_fraction

VIDEO_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


class RecordingObjectStore(LocalObjectStore):
    """Local store that records transfers and fails the first `failures` of them."""

    def __init__(self, root_dir, failures=0, url_failures=0):
        super().__init__(root_dir, public_base_url="https://cdn.test", chunk_size=1024)
        self.failures = failures
        self.url_failures = url_failures
        self.transfers = []
        self.url_calls = 0

    def start_upload(self, local_path, key, metadata, on_progress=None):
        self.transfers.append((key, dict(metadata)))
        if len(self.transfers) <= self.failures:
            def run(task):
                raise TransientIOError(f"connection reset during transfer {len(self.transfers)}")
            return TransferTask(key, run).start()
        return super().start_upload(local_path, key, metadata, on_progress)

    def public_url(self, key):
        self.url_calls += 1
        if self.url_calls <= self.url_failures:
            raise TransientIOError("URL service unavailable")
        return super().public_url(key)


class BlockingObjectStore(LocalObjectStore):
    """The first transfer blocks until cancelled; later ones go straight through."""

    def __init__(self, root_dir):
        super().__init__(root_dir, public_base_url="https://cdn.test", chunk_size=1024)
        self.started = threading.Event()
        self.calls = 0

    def start_upload(self, local_path, key, metadata, on_progress=None):
        self.calls += 1
        if self.calls > 1:
            return super().start_upload(local_path, key, metadata, on_progress)

        def run(task):
            self.started.set()
            while not task.cancelled:
                threading.Event().wait(0.01)
            raise UploadCancelled(f"Transfer of {key} was cancelled")

        return TransferTask(key, run).start()


def make_pipeline(store, objects, session, sleeps, **kwargs):
    kwargs.setdefault("probe", lambda path: 30.0)
    kwargs.setdefault("id_factory", lambda: VIDEO_ID)
    return UploadPipeline(store, objects, session, sleep=sleeps.append, **kwargs)


def run_in_thread(fn, *args, **kwargs):
    outcome = {}

    def target():
        try:
            outcome["result"] = fn(*args, **kwargs)
        except Exception as e:
            outcome["error"] = e

    t = threading.Thread(target=target)
    t.start()
    return t, outcome


class TestClampFraction:
    @pytest.mark.parametrize("completed,total,expected", [
        (0, 100, 0.0),
        (50, 100, 0.5),
        (100, 100, 1.0),
        (150, 100, 1.0),
        (-5, 100, 0.0),
        (10, 0, 0.0),
    ])
    def test_clamps(self, completed, total, expected):
        assert clamp_fraction(completed, total) == expected


class TestSuccessfulUpload:
    def test_publishes_record(self, store, tmp_path, session, sleeps, video_file):
        objects = RecordingObjectStore(str(tmp_path / "objects"))
        pipeline = make_pipeline(store, objects, session, sleeps)

        url = pipeline.upload(str(video_file), caption="  Sunset  ")

        assert url == f"https://cdn.test/videos/alice/{VIDEO_ID}.mp4"
        record = VideoRecord.from_document(VIDEO_ID, store.get(f"videos/{VIDEO_ID}").data)
        assert record.uploader_id == "alice"
        assert record.title == "Sunset"
        assert record.media_url == url
        assert record.status == VideoStatus.PROCESSING
        assert record.like_count == 0
        assert record.processing.upload_attempt == 1
        assert record.processing.original_filename == "clip.mp4"
        assert record.processing.original_size == video_file.stat().st_size
        assert record.processing.content_type == "video/mp4"
        assert set(record.processing.stages.values()) == {"pending"}
        assert sleeps == [1.0]
        assert not pipeline.is_uploading

    def test_stores_object_with_metadata(self, store, tmp_path, session, sleeps, video_file):
        objects = RecordingObjectStore(str(tmp_path / "objects"))
        pipeline = make_pipeline(store, objects, session, sleeps)
        pipeline.upload(str(video_file))

        key, metadata = objects.transfers[0]
        assert key == f"videos/alice/{VIDEO_ID}.mp4"
        assert metadata["video_id"] == VIDEO_ID
        assert metadata["uploader_id"] == "alice"
        stored = objects.get_metadata(key)
        assert stored.size == video_file.stat().st_size
        assert stored.custom["upload_attempt"] == 1

    def test_default_caption(self, pipeline, store, video_file):
        url = pipeline.upload(str(video_file))
        video_id = url.rsplit("/", 1)[-1].split(".")[0]
        assert store.get(f"videos/{video_id}").get("title") == "New video"

    def test_progress_is_clamped_and_monotonic(self, pipeline, video_file):
        fractions = []
        pipeline.upload(str(video_file), on_progress=fractions.append)

        assert fractions
        assert all(0.0 <= f <= 1.0 for f in fractions)
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0

    def test_from_config(self, store, objects, session, video_file):
        cfg = get_upload_config({"upload": {"settle_delay": 0, "max_retries": 5}})
        pipeline = UploadPipeline.from_config(cfg, store, objects, session, probe=lambda p: 1.0)
        assert pipeline.max_retries == 5
        assert pipeline.upload(str(video_file)).startswith("https://cdn.test/videos/alice/")


class TestValidationBeforeTransfer:
    @pytest.fixture
    def objects(self, tmp_path):
        return RecordingObjectStore(str(tmp_path / "objects"))

    def test_oversized_file_never_transfers(self, store, objects, session, sleeps, tmp_path):
        big = tmp_path / "big.mp4"
        with open(big, "wb") as f:
            f.truncate(600 * 1024 * 1024)
        pipeline = make_pipeline(store, objects, session, sleeps)

        with pytest.raises(ValidationError, match="MiB"):
            pipeline.upload(str(big), caption="too big")
        assert objects.transfers == []

    def test_blank_caption(self, store, objects, session, sleeps, video_file):
        pipeline = make_pipeline(store, objects, session, sleeps)
        with pytest.raises(ValidationError):
            pipeline.upload(str(video_file), caption="   ")
        assert objects.transfers == []

    def test_requires_user(self, store, objects, sleeps, video_file):
        pipeline = make_pipeline(store, objects, AuthSession(), sleeps)
        with pytest.raises(AuthError):
            pipeline.upload(str(video_file))
        assert objects.transfers == []

    def test_too_long_video(self, store, objects, session, sleeps, video_file):
        pipeline = make_pipeline(store, objects, session, sleeps, probe=lambda p: 181.0)
        with pytest.raises(ValidationError):
            pipeline.upload(str(video_file))
        assert objects.transfers == []

    def test_invalid_generated_id(self, store, objects, session, sleeps, video_file):
        pipeline = make_pipeline(store, objects, session, sleeps, id_factory=lambda: "not-a-uuid")
        with pytest.raises(InvalidStorageKeyError):
            pipeline.upload(str(video_file))
        assert objects.transfers == []


class TestRetries:
    def test_two_failures_then_success_reuses_video_id(self, store, tmp_path, session, sleeps, video_file):
        objects = RecordingObjectStore(str(tmp_path / "objects"), failures=2)
        ids = iter(["11111111-1111-4111-8111-111111111111", "22222222-2222-4222-8222-222222222222"])
        pipeline = make_pipeline(store, objects, session, sleeps, id_factory=lambda: next(ids))

        pipeline.upload(str(video_file))

        keys = [key for key, _ in objects.transfers]
        assert len(keys) == 3
        assert len(set(keys)) == 1
        assert [m["upload_attempt"] for _, m in objects.transfers] == [1, 2, 3]
        doc = store.get("videos/11111111-1111-4111-8111-111111111111")
        assert doc.get("processing")["upload_attempt"] == 3
        assert store.get("videos/22222222-2222-4222-8222-222222222222") is None
        # backoff 2**1, 2**2, then the settle delay of the successful attempt
        assert sleeps == [2.0, 4.0, 1.0]

    def test_exhausted(self, store, tmp_path, session, sleeps, video_file):
        objects = RecordingObjectStore(str(tmp_path / "objects"), failures=99)
        pipeline = make_pipeline(store, objects, session, sleeps)

        with pytest.raises(RetryExhausted) as exc_info:
            pipeline.upload(str(video_file))

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientIOError)
        assert len(objects.transfers) == 3
        assert sleeps == [2.0, 4.0]
        assert store.get(f"videos/{VIDEO_ID}") is None

    def test_custom_backoff_base(self, store, tmp_path, session, sleeps, video_file):
        objects = RecordingObjectStore(str(tmp_path / "objects"), failures=99)
        pipeline = make_pipeline(store, objects, session, sleeps, max_retries=4, backoff_base=3.0)
        with pytest.raises(RetryExhausted):
            pipeline.upload(str(video_file))
        assert sleeps == [3.0, 9.0, 27.0]

    def test_url_issuance_has_its_own_retry(self, store, tmp_path, session, sleeps, video_file):
        objects = RecordingObjectStore(str(tmp_path / "objects"), url_failures=2)
        pipeline = make_pipeline(store, objects, session, sleeps)

        url = pipeline.upload(str(video_file))

        assert url.startswith("https://cdn.test/")
        assert len(objects.transfers) == 1
        assert objects.url_calls == 3
        # settle delay, then 1s and 2s between URL attempts
        assert sleeps == [1.0, 1.0, 2.0]

    def test_persistence_failure_is_not_retried(self, store, tmp_path, session, sleeps,
                                                video_file, monkeypatch):
        objects = RecordingObjectStore(str(tmp_path / "objects"))
        pipeline = make_pipeline(store, objects, session, sleeps)

        def fail(path, data):
            raise TransientIOError("document store unavailable")

        monkeypatch.setattr(store, "set", fail)
        with pytest.raises(PersistenceError) as exc_info:
            pipeline.upload(str(video_file))

        err = exc_info.value
        assert err.video_id == VIDEO_ID
        assert err.storage_key == f"videos/alice/{VIDEO_ID}.mp4"
        assert len(objects.transfers) == 1
        # The media object is left in place for reconciliation
        assert objects.get_metadata(err.storage_key).size == video_file.stat().st_size


class TestCancellation:
    def test_newer_upload_cancels_active_transfer(self, store, tmp_path, session, sleeps, video_file):
        objects = BlockingObjectStore(str(tmp_path / "objects"))
        ids = iter(["11111111-1111-4111-8111-111111111111", "22222222-2222-4222-8222-222222222222"])
        pipeline = make_pipeline(store, objects, session, sleeps, id_factory=lambda: next(ids))

        first, outcome = run_in_thread(pipeline.upload, str(video_file), caption="first")
        assert objects.started.wait(5)

        url = pipeline.upload(str(video_file), caption="second")
        first.join(5)

        assert isinstance(outcome.get("error"), UploadCancelled)
        assert "22222222-2222-4222-8222-222222222222" in url
        assert store.get("videos/11111111-1111-4111-8111-111111111111") is None
        assert store.get("videos/22222222-2222-4222-8222-222222222222").get("title") == "second"

    def test_explicit_cancel(self, store, tmp_path, session, sleeps, video_file):
        objects = BlockingObjectStore(str(tmp_path / "objects"))
        pipeline = make_pipeline(store, objects, session, sleeps)

        worker, outcome = run_in_thread(pipeline.upload, str(video_file))
        assert objects.started.wait(5)
        assert pipeline.is_uploading

        pipeline.cancel()
        worker.join(5)

        assert isinstance(outcome.get("error"), UploadCancelled)
        assert not pipeline.is_uploading
        assert store.get(f"videos/{VIDEO_ID}") is None
        assert sleeps == []

    def test_cancel_when_idle_is_harmless(self, pipeline):
        pipeline.cancel()
        assert not pipeline.is_uploading
