"""Tests for the directory-backed object store."""
from __future__ import annotations

import threading

import pytest

from reelfeed.errors import TransientIOError, UploadCancelled
from reelfeed.store.object_store import LocalObjectStore, TransferTask


class TestLocalObjectStore:
    def test_upload_copies_bytes_and_metadata(self, objects, video_file):
        progress = []
        task = objects.start_upload(
            str(video_file),
            "videos/alice/x.mp4",
            {"content_type": "video/mp4", "video_id": "x"},
            lambda done, total: progress.append((done, total)),
        )
        meta = task.wait(5)

        size = video_file.stat().st_size
        assert meta.size == size
        assert meta.content_type == "video/mp4"
        assert meta.custom == {"video_id": "x"}
        assert meta.updated_at is not None
        assert progress[-1] == (size, size)
        assert len(progress) == -(-size // 1024)
        assert (objects.root / "videos" / "alice" / "x.mp4").read_bytes() == video_file.read_bytes()

    def test_missing_source_is_transient(self, objects, tmp_path):
        task = objects.start_upload(str(tmp_path / "gone.mp4"), "videos/a/b.mp4", {})
        with pytest.raises(TransientIOError):
            task.wait(5)

    def test_metadata_for_missing_object(self, objects):
        with pytest.raises(TransientIOError):
            objects.get_metadata("videos/a/none.mp4")

    def test_public_url_with_base(self, objects, video_file):
        objects.start_upload(str(video_file), "videos/alice/my clip.mp4", {}).wait(5)
        assert objects.public_url("videos/alice/my clip.mp4") == "https://cdn.test/videos/alice/my%20clip.mp4"

    def test_public_url_without_base(self, tmp_path, video_file):
        store = LocalObjectStore(str(tmp_path / "objects"))
        store.start_upload(str(video_file), "videos/a/b.mp4", {}).wait(5)
        assert store.public_url("videos/a/b.mp4").startswith("file://")

    def test_public_url_for_missing_object(self, objects):
        with pytest.raises(TransientIOError):
            objects.public_url("videos/a/none.mp4")

    @pytest.mark.parametrize("key", ["", "videos/../escape.mp4", "videos//x.mp4"])
    def test_rejects_bad_keys(self, objects, video_file, key):
        with pytest.raises(ValueError):
            objects.start_upload(str(video_file), key, {})

    def test_cancel_removes_partial_upload(self, objects, video_file):
        handle = {}
        ready = threading.Event()

        def cancel_on_first_chunk(done, total):
            ready.wait(5)
            handle["task"].cancel()

        task = objects.start_upload(str(video_file), "videos/a/b.mp4", {}, cancel_on_first_chunk)
        handle["task"] = task
        ready.set()

        with pytest.raises(UploadCancelled):
            task.wait(5)
        assert task.cancelled
        assert task.done
        assert not (objects.root / "videos" / "a" / "b.mp4").exists()
        assert not (objects.root / "videos" / "a" / "b.mp4.part").exists()


class TestTransferTask:
    def test_wait_returns_result(self):
        task = TransferTask("k", lambda t: "done").start()
        assert task.wait(5) == "done"
        assert task.done

    def test_wait_raises_run_error(self):
        def run(t):
            raise TransientIOError("boom")

        with pytest.raises(TransientIOError, match="boom"):
            TransferTask("k", run).start().wait(5)

    def test_wait_timeout_is_transient(self):
        gate = threading.Event()
        task = TransferTask("k", lambda t: gate.wait(5)).start()
        with pytest.raises(TransientIOError, match="timed out"):
            task.wait(0.01)
        gate.set()
        task.wait(5)
