"""
Tests for the in-memory video and clip store.
"""

import threading

import pytest

from cutdown.services.video_store import VideoStore


class TestVideoStore:
    """Tests for VideoStore."""

    @pytest.fixture
    def store(self):
        return VideoStore()

    def test_ids_monotonic(self, store):
        """Video ids are allocated in increasing order."""
        first = store.create_video("1-a.mp4", "a.mp4", "/tmp/a.mp4", 10)
        second = store.create_video("2-b.mp4", "b.mp4", "/tmp/b.mp4", 20)
        assert second.id == first.id + 1

    def test_duration_formatting(self, store):
        """Duration renders as HH:MM:SS once known."""
        video = store.create_video("1-a.mp4", "a.mp4", "/tmp/a.mp4", 10)
        assert video.duration is None

        updated = store.update_video(video.id, duration_seconds=3725.4)
        assert updated.duration == "01:02:05"

    def test_update_and_delete_video(self, store):
        """Unknown videos update to None; deletes report whether anything was removed."""
        video = store.create_video("1-a.mp4", "a.mp4", "/tmp/a.mp4", 10)
        assert store.update_video(999, processed=True) is None
        assert store.delete_video(video.id)
        assert not store.delete_video(video.id)
        assert store.get_video(video.id) is None

    def test_returned_records_are_copies(self, store):
        """Changing a returned record does not change the stored one."""
        video = store.create_video("1-a.mp4", "a.mp4", "/tmp/a.mp4", 10)
        video.processed = True
        assert not store.get_video(video.id).processed

    def test_clip_lifecycle(self, store):
        """Clips are created, listed per video, updated and deleted."""
        clip = store.create_clip(1, "00:00:10", "00:00:20", "a-clip-01 (16x9).mp4")
        store.create_clip(1, "00:00:30", "00:00:40", "a-clip-02 (16x9).mp4")
        store.create_clip(2, "00:00:05", "00:00:09", "b-clip-01 (16x9).mp4")

        assert len(store.get_clips_by_video(1)) == 2
        assert store.update_clip(clip.id, processed=True).processed
        assert store.delete_clip(clip.id)
        assert store.delete_clips_by_video(1) == 1
        assert store.get_clips_by_video(1) == []
        assert len(store.get_clips_by_video(2)) == 1

    def test_concurrent_creates(self, store):
        """Concurrent creators never receive the same id."""
        ids = []

        def create():
            ids.append(store.create_video("x.mp4", "x.mp4", "/tmp/x.mp4", 1).id)

        threads = [threading.Thread(target=create) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 50
