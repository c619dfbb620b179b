"""
Tests for archive naming and packaging.
"""

import asyncio
import os
import zipfile

import pytest

from cutdown.services.archive_packager import (
    ArchiveError,
    ArchivePackager,
    ArtifactCategory,
    OutputArtifact,
    archive_name,
    archive_suffix,
    sanitize_output_name,
)


def _artifact(tmp_path, folder, name, category):
    path = tmp_path / "job" / folder / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(name.encode())
    return OutputArtifact(str(path), category, folder)


class TestArchiveNaming:
    """Tests for the category-priority naming rule."""

    @pytest.mark.parametrize(
        "categories, expected",
        [
            ({ArtifactCategory.CLIP, ArtifactCategory.SHORT, ArtifactCategory.LOOP}, "clips"),
            ({ArtifactCategory.SHORT, ArtifactCategory.STILL}, "shorts"),
            ({ArtifactCategory.LOOP, ArtifactCategory.STILL}, "exports"),
            ({ArtifactCategory.LOOP}, "loops"),
            ({ArtifactCategory.STILL}, "stills"),
        ],
    )
    def test_suffix_priority(self, categories, expected):
        """Clips beat shorts; loops with stills are exports."""
        assert archive_suffix(categories) == expected

    def test_empty_rejected(self):
        """There is no name for an empty archive."""
        with pytest.raises(ArchiveError):
            archive_suffix([])

    def test_archive_name(self):
        """Archive names combine the output name and suffix."""
        assert archive_name("interview", [ArtifactCategory.CLIP]) == "interview-clips.zip"

    def test_sanitize_output_name(self):
        """Path components and unsafe characters are stripped from output names."""
        assert sanitize_output_name("../../etc/passwd") == "passwd"
        assert sanitize_output_name("my talk: part 1?") == "my talk_ part 1"
        assert sanitize_output_name("") == "output"


class TestArchivePackager:
    """Tests for ArchivePackager."""

    def test_package_layout(self, tmp_path, settings):
        """Entries are stored under their category folder."""
        packager = ArchivePackager(settings)
        artifacts = [
            _artifact(tmp_path, "clips (16x9)", "talk-clip-01 (16x9).mp4", ArtifactCategory.CLIP),
            _artifact(tmp_path, "clips (9x16)", "talk-clip-01 (9x16).mp4", ArtifactCategory.CLIP),
            _artifact(tmp_path, "stills", "talk-still-01.jpg", ArtifactCategory.STILL),
        ]

        archive = asyncio.run(packager.package(7, "talk", artifacts))

        assert archive.name == "talk-clips.zip"
        assert archive.entry_count == 3
        assert archive.path == os.path.join(settings.archive_directory, "7", "talk-clips.zip")
        with zipfile.ZipFile(archive.path) as zf:
            assert sorted(zf.namelist()) == [
                "clips (16x9)/talk-clip-01 (16x9).mp4",
                "clips (9x16)/talk-clip-01 (9x16).mp4",
                "stills/talk-still-01.jpg",
            ]
            assert all(info.compress_type == zipfile.ZIP_STORED for info in zf.infolist())

    def test_previous_archive_replaced(self, tmp_path, settings):
        """Packaging again for the same video leaves only the new archive."""
        packager = ArchivePackager(settings)
        loops = [_artifact(tmp_path, "loops", "talk-loop-01.gif", ArtifactCategory.LOOP)]
        stills = [_artifact(tmp_path, "stills", "talk-still-01.jpg", ArtifactCategory.STILL)]

        asyncio.run(packager.package(7, "talk", loops))
        second = asyncio.run(packager.package(7, "talk", stills))

        assert os.listdir(packager.archive_dir(7)) == ["talk-stills.zip"]
        assert packager.locate(7) == second.path

    def test_missing_files_skipped(self, tmp_path, settings):
        """Artifacts that vanished are left out; the name follows what remains."""
        packager = ArchivePackager(settings)
        gone = OutputArtifact(str(tmp_path / "nope.mp4"), ArtifactCategory.CLIP, "clips (16x9)")
        loop = _artifact(tmp_path, "loops", "talk-loop-01.gif", ArtifactCategory.LOOP)

        archive = asyncio.run(packager.package(3, "talk", [gone, loop]))

        assert archive.name == "talk-loops.zip"
        assert archive.entry_count == 1

    def test_nothing_to_package(self, tmp_path, settings):
        """An empty artifact list is an archive error."""
        packager = ArchivePackager(settings)
        with pytest.raises(ArchiveError):
            asyncio.run(packager.package(3, "talk", []))

    def test_locate_without_archive(self, settings):
        """Videos without an archive have nothing to locate."""
        assert ArchivePackager(settings).locate(99) is None
