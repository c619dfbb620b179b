"""
Video Store - Keyed record store for source videos and produced clips.

In-memory implementation of the narrow create/get/update/delete contract the
rest of the service relies on. Replace with a database-backed store for
anything that must outlive the process.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Optional

from cutdown.services.timestamp_parser import seconds_to_timestamp

logger = logging.getLogger(__name__)


@dataclass
class SourceVideo:
    """An ingested source video."""

    id: int
    filename: str
    original_name: str
    path: str
    size: int
    duration_seconds: Optional[float] = None  # Filled in once ffprobe finishes
    processed: bool = False

    @property
    def duration(self) -> Optional[str]:
        if self.duration_seconds is None:
            return None
        return seconds_to_timestamp(self.duration_seconds)


@dataclass
class ClipRecord:
    """A clip produced from a source video."""

    id: int
    video_id: int
    start_time: str
    end_time: str
    filename: str
    path: Optional[str] = None
    processed: bool = False


class VideoStore:
    """Thread-safe in-memory store with monotonically allocated ids."""

    def __init__(self):
        self._videos: dict[int, SourceVideo] = {}
        self._clips: dict[int, ClipRecord] = {}
        self._next_video_id = 1
        self._next_clip_id = 1
        self._lock = threading.Lock()

    # Video operations

    def create_video(
        self,
        filename: str,
        original_name: str,
        path: str,
        size: int,
        duration_seconds: Optional[float] = None,
    ) -> SourceVideo:
        with self._lock:
            video = SourceVideo(
                id=self._next_video_id,
                filename=filename,
                original_name=original_name,
                path=path,
                size=size,
                duration_seconds=duration_seconds,
            )
            self._videos[video.id] = video
            self._next_video_id += 1

        logger.info(f"Video {video.id} created: {original_name} ({size / 1024 / 1024:.1f} MB)")
        return replace(video)

    def get_video(self, video_id: int) -> Optional[SourceVideo]:
        with self._lock:
            video = self._videos.get(video_id)
            return replace(video) if video else None

    def update_video(self, video_id: int, **updates: Any) -> Optional[SourceVideo]:
        with self._lock:
            video = self._videos.get(video_id)
            if video is None:
                return None
            updated = replace(video, **updates)
            self._videos[video_id] = updated
            return replace(updated)

    def delete_video(self, video_id: int) -> bool:
        with self._lock:
            return self._videos.pop(video_id, None) is not None

    # Clip operations

    def create_clip(
        self,
        video_id: int,
        start_time: str,
        end_time: str,
        filename: str,
        path: Optional[str] = None,
    ) -> ClipRecord:
        with self._lock:
            clip = ClipRecord(
                id=self._next_clip_id,
                video_id=video_id,
                start_time=start_time,
                end_time=end_time,
                filename=filename,
                path=path,
            )
            self._clips[clip.id] = clip
            self._next_clip_id += 1
            return replace(clip)

    def get_clips_by_video(self, video_id: int) -> list[ClipRecord]:
        with self._lock:
            return [replace(c) for c in self._clips.values() if c.video_id == video_id]

    def update_clip(self, clip_id: int, **updates: Any) -> Optional[ClipRecord]:
        with self._lock:
            clip = self._clips.get(clip_id)
            if clip is None:
                return None
            updated = replace(clip, **updates)
            self._clips[clip_id] = updated
            return replace(updated)

    def delete_clip(self, clip_id: int) -> bool:
        with self._lock:
            return self._clips.pop(clip_id, None) is not None

    def delete_clips_by_video(self, video_id: int) -> int:
        with self._lock:
            doomed = [clip_id for clip_id, c in self._clips.items() if c.video_id == video_id]
            for clip_id in doomed:
                del self._clips[clip_id]
            return len(doomed)
