"""
Archive Packager - Bundles a job's artifacts into one downloadable zip.

Folder layout inside the archive mirrors the artifact category:

    clips (16x9)/  clips (9x16)/  loops/  stills/  shorts/

Media files are already compressed, so entries are stored rather than
deflated.
"""

import asyncio
import logging
import os
import re
import shutil
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from cutdown.config import Settings, get_settings

logger = logging.getLogger(__name__)


SAFE_NAME_PATTERN = re.compile(r"[^A-Za-z0-9 _().-]+")


class ArtifactCategory(str, Enum):
    """Logical category of a produced file."""

    CLIP = "clip"
    LOOP = "loop"
    STILL = "still"
    SHORT = "short"


CATEGORY_FOLDERS = {
    ArtifactCategory.LOOP: "loops",
    ArtifactCategory.STILL: "stills",
    ArtifactCategory.SHORT: "shorts",
}


@dataclass
class OutputArtifact:
    """A produced file tagged with its category and archive folder."""

    path: str
    category: ArtifactCategory
    folder: str

    @property
    def arcname(self) -> str:
        return f"{self.folder}/{os.path.basename(self.path)}"


@dataclass
class PackagedArchive:
    """A written archive ready for download."""

    path: str
    name: str
    entry_count: int
    size_bytes: int


def sanitize_output_name(name: str) -> str:
    """Reduce a user-supplied output name to a safe file stem."""
    cleaned = SAFE_NAME_PATTERN.sub("_", os.path.basename(name or "")).strip(" ._")
    return cleaned or "output"


def archive_suffix(categories: Iterable[ArtifactCategory]) -> str:
    """
    Pick the archive suffix from the categories actually produced.

    Clips take precedence, then shorts; loops together with stills are
    "exports", otherwise the single category names the archive.

    Raises:
        ArchiveError: If no categories were produced
    """
    present = set(categories)
    if ArtifactCategory.CLIP in present:
        return "clips"
    if ArtifactCategory.SHORT in present:
        return "shorts"
    if ArtifactCategory.LOOP in present and ArtifactCategory.STILL in present:
        return "exports"
    if ArtifactCategory.LOOP in present:
        return "loops"
    if ArtifactCategory.STILL in present:
        return "stills"
    raise ArchiveError("Nothing to package")


def archive_name(output_name: str, categories: Iterable[ArtifactCategory]) -> str:
    return f"{sanitize_output_name(output_name)}-{archive_suffix(categories)}.zip"


class ArchivePackager:
    """Writes archives to one canonical location per video."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def archive_dir(self, video_id: int) -> str:
        return os.path.join(self.settings.archive_directory, str(video_id))

    async def package(
        self,
        video_id: int,
        output_name: str,
        artifacts: list[OutputArtifact],
    ) -> PackagedArchive:
        """
        Write all artifacts into a single zip for the video.

        Any previous archive for the same video is replaced.

        Args:
            video_id: Source video the artifacts belong to
            output_name: User-facing base name for the archive
            artifacts: Produced files with their categories

        Returns:
            PackagedArchive describing the written file

        Raises:
            ArchiveError: If there is nothing to package or the write fails
        """
        present = [a for a in artifacts if os.path.isfile(a.path)]
        missing = len(artifacts) - len(present)
        if missing:
            logger.warning(f"{missing} artifacts vanished before packaging for video {video_id}")
        if not present:
            raise ArchiveError("No artifacts available to package")

        name = archive_name(output_name, (a.category for a in present))
        target_dir = self.archive_dir(video_id)

        loop = asyncio.get_event_loop()
        try:
            path = await loop.run_in_executor(None, self._write_archive, target_dir, name, present)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Failed to write archive {name}: {e}") from e

        size = os.path.getsize(path)
        logger.info(f"Archive ready: {path} ({len(present)} files, {size / 1024 / 1024:.1f} MB)")
        return PackagedArchive(path=path, name=name, entry_count=len(present), size_bytes=size)

    def _write_archive(self, target_dir: str, name: str, artifacts: list[OutputArtifact]) -> str:
        if os.path.isdir(target_dir):
            shutil.rmtree(target_dir)
        os.makedirs(target_dir, exist_ok=True)

        final_path = os.path.join(target_dir, name)
        tmp_path = final_path + ".tmp"
        try:
            with zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_STORED) as zf:
                for artifact in artifacts:
                    zf.write(artifact.path, arcname=artifact.arcname)
            os.replace(tmp_path, final_path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        return final_path

    def locate(self, video_id: int) -> Optional[str]:
        """Find the archive for a video, or None if none was written."""
        target_dir = self.archive_dir(video_id)
        if not os.path.isdir(target_dir):
            return None
        archives = [
            os.path.join(target_dir, f)
            for f in os.listdir(target_dir)
            if f.endswith(".zip")
        ]
        if not archives:
            return None
        return max(archives, key=os.path.getmtime)


class ArchiveError(Exception):
    """Exception raised when an archive cannot be produced."""
    pass
