"""
Upload Assembler - Resumable chunked uploads for multi-gigabyte source videos.

Chunks may arrive out of order or in parallel. Each chunk is streamed straight
to a per-session staging directory under a zero-padded index, so a directory
listing is already in byte order and nothing is held in memory. Once every
chunk has arrived a single finalize call concatenates them into the
destination file.

Staging layout:
    uploads/chunks/{upload_id}/
    ├── 00000.part
    ├── 00001.part
    └── ...
"""

import asyncio
import logging
import os
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from cutdown.config import Settings, get_settings

logger = logging.getLogger(__name__)


COPY_BUFFER_BYTES = 1024 * 1024
UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass
class UploadSession:
    """Bookkeeping for one chunked upload (chunks themselves live on disk)."""

    upload_id: str
    file_name: str
    total_chunks: int
    chunk_dir: str
    chunk_sizes: dict[int, int] = field(default_factory=dict)
    finalizing: bool = False
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    @property
    def received_chunks(self) -> int:
        return len(self.chunk_sizes)

    @property
    def received_bytes(self) -> int:
        return sum(self.chunk_sizes.values())


@dataclass
class ChunkReceipt:
    """Acknowledgement for one stored chunk."""

    upload_id: str
    chunk_index: int
    received: int
    total: int
    received_bytes: int


@dataclass
class AssembledUpload:
    """A finalized upload ready to become a source video."""

    path: str
    filename: str
    original_name: str
    size: int


class ChunkedUploadAssembler:
    """
    Tracks chunked upload sessions and reassembles completed uploads.

    Session state is guarded by one lock; chunk I/O happens outside it in the
    default executor so a slow write never blocks other sessions.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._sessions: dict[str, UploadSession] = {}
        self._lock = threading.Lock()
        os.makedirs(self.settings.chunk_directory, exist_ok=True)

    def get_session(self, upload_id: str) -> Optional[UploadSession]:
        with self._lock:
            return self._sessions.get(upload_id)

    def _chunk_path(self, session: UploadSession, chunk_index: int) -> str:
        width = self.settings.chunk_index_width
        return os.path.join(session.chunk_dir, f"{chunk_index:0{width}d}.part")

    async def receive_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        file_name: str,
        source: BinaryIO,
    ) -> ChunkReceipt:
        """
        Persist one chunk, creating the session on first contact.

        Re-sending an index replaces the earlier part without double counting.

        Args:
            upload_id: Opaque client-chosen session token
            chunk_index: Zero-based position of this chunk
            total_chunks: Declared number of chunks for the whole file
            file_name: Original file name
            source: Readable binary stream with the chunk bytes

        Returns:
            ChunkReceipt with the updated received count

        Raises:
            InvalidChunkError: On a bad id, index, chunk count or oversized chunk
        """
        if not UPLOAD_ID_PATTERN.match(upload_id or ""):
            raise InvalidChunkError(f"Invalid upload id: {upload_id!r}")
        if total_chunks < 1:
            raise InvalidChunkError("total_chunks must be at least 1")
        if not 0 <= chunk_index < total_chunks:
            raise InvalidChunkError(f"Chunk index {chunk_index} outside 0..{total_chunks - 1}")

        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                chunk_dir = os.path.join(self.settings.chunk_directory, upload_id)
                os.makedirs(chunk_dir, exist_ok=True)
                session = UploadSession(
                    upload_id=upload_id,
                    file_name=os.path.basename(file_name) or "upload",
                    total_chunks=total_chunks,
                    chunk_dir=chunk_dir,
                )
                self._sessions[upload_id] = session
                logger.info(f"Upload session {upload_id} created: {total_chunks} chunks for {session.file_name}")
            elif session.total_chunks != total_chunks:
                raise InvalidChunkError(
                    f"Upload {upload_id} declared {session.total_chunks} chunks, got {total_chunks}"
                )
            elif session.finalizing:
                raise InvalidChunkError(f"Upload {upload_id} is already being finalized")

            chunk_path = self._chunk_path(session, chunk_index)

        loop = asyncio.get_event_loop()
        tmp_path, size = await loop.run_in_executor(None, self._write_chunk, source, chunk_path)

        # Parts only change name under the lock, and never once finalize has begun
        with self._lock:
            if self._sessions.get(upload_id) is not session:
                _remove_file(tmp_path)
                raise UploadSessionNotFoundError(f"Upload session {upload_id} expired during chunk write")
            if session.finalizing:
                _remove_file(tmp_path)
                raise InvalidChunkError(f"Upload {upload_id} is already being finalized")

            os.replace(tmp_path, chunk_path)
            session.chunk_sizes[chunk_index] = size
            session.last_activity = time.time()
            receipt = ChunkReceipt(
                upload_id=upload_id,
                chunk_index=chunk_index,
                received=session.received_chunks,
                total=session.total_chunks,
                received_bytes=session.received_bytes,
            )

        logger.debug(
            f"Chunk {chunk_index + 1}/{receipt.total} received for {upload_id} "
            f"({receipt.received_bytes / 1024 / 1024:.0f}MB so far)"
        )
        return receipt

    def _write_chunk(self, source: BinaryIO, chunk_path: str) -> tuple[str, int]:
        # Written beside the final name; the caller renames it into place
        tmp_path = f"{chunk_path}.{uuid.uuid4().hex}.tmp"
        written = 0
        with open(tmp_path, "wb") as dst:
            while True:
                block = source.read(COPY_BUFFER_BYTES)
                if not block:
                    break
                written += len(block)
                if written > self.settings.max_chunk_size_bytes:
                    dst.close()
                    _remove_file(tmp_path)
                    raise InvalidChunkError(
                        f"Chunk exceeds {self.settings.max_chunk_size_bytes // (1024 * 1024)}MB limit"
                    )
                dst.write(block)
        return tmp_path, written

    async def finalize(
        self,
        upload_id: str,
        file_name: Optional[str] = None,
        declared_size: Optional[int] = None,
    ) -> AssembledUpload:
        """
        Concatenate all chunks of a complete session into the destination file.

        Only one finalize may run per session: the in-progress flag is checked
        and set before any I/O. On success the staging directory and session
        are removed; on failure the partial destination is removed as well
        before the error propagates.

        Raises:
            UploadSessionNotFoundError: Unknown upload id
            IncompleteUploadError: Not every chunk has arrived
            FinalizeConflictError: Another finalize is already running
            MissingChunkError: A counted chunk is absent from staging
        """
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                raise UploadSessionNotFoundError(f"Upload session not found: {upload_id}")
            if session.received_chunks != session.total_chunks:
                raise IncompleteUploadError(
                    f"Incomplete upload: {session.received_chunks}/{session.total_chunks} chunks received"
                )
            if session.finalizing:
                raise FinalizeConflictError(f"Upload {upload_id} is already being finalized")
            session.finalizing = True

        original_name = os.path.basename(file_name or "") or session.file_name
        filename = f"{int(time.time() * 1000)}-{original_name}"
        final_path = os.path.join(self.settings.upload_directory, filename)

        loop = asyncio.get_event_loop()
        try:
            size = await loop.run_in_executor(None, self._concatenate_chunks, session, final_path)
        except Exception:
            logger.exception(f"Finalize failed for upload {upload_id}, removing partial output")
            await loop.run_in_executor(None, self._discard, session, final_path)
            raise

        await loop.run_in_executor(None, self._discard, session, None)

        if declared_size is not None and declared_size != size:
            logger.warning(f"Upload {upload_id} declared {declared_size} bytes but assembled {size}")

        logger.info(f"Upload {upload_id} assembled: {final_path} ({size / 1024 / 1024:.1f} MB)")
        return AssembledUpload(
            path=final_path,
            filename=filename,
            original_name=original_name,
            size=size,
        )

    def _concatenate_chunks(self, session: UploadSession, final_path: str) -> int:
        os.makedirs(os.path.dirname(final_path) or ".", exist_ok=True)
        with open(final_path, "wb") as dst:
            for index in range(session.total_chunks):
                chunk_path = self._chunk_path(session, index)
                if not os.path.isfile(chunk_path):
                    raise MissingChunkError(f"Missing chunk {index}")
                with open(chunk_path, "rb") as src:
                    shutil.copyfileobj(src, dst, COPY_BUFFER_BYTES)
        return os.path.getsize(final_path)

    def _discard(self, session: UploadSession, partial_path: Optional[str]) -> None:
        if partial_path:
            _remove_file(partial_path)
        shutil.rmtree(session.chunk_dir, ignore_errors=True)
        with self._lock:
            if self._sessions.get(session.upload_id) is session:
                del self._sessions[session.upload_id]

    async def cleanup_stale_sessions(self, now: Optional[float] = None) -> int:
        """
        Reclaim sessions untouched for longer than the retention window.

        Sessions being finalized are left alone. Staging directories with no
        session (left over from a restart) are reclaimed by modification time.

        Returns:
            Number of staging directories removed
        """
        now = now or time.time()
        retention = self.settings.upload_session_retention_seconds

        with self._lock:
            stale = [
                s for s in self._sessions.values()
                if not s.finalizing and now - s.last_activity > retention
            ]
            for session in stale:
                del self._sessions[session.upload_id]
            live_dirs = {s.chunk_dir for s in self._sessions.values()}

        def sweep() -> int:
            removed = 0
            for session in stale:
                shutil.rmtree(session.chunk_dir, ignore_errors=True)
                removed += 1

            chunk_root = self.settings.chunk_directory
            if os.path.isdir(chunk_root):
                for entry in os.scandir(chunk_root):
                    if not entry.is_dir() or entry.path in live_dirs:
                        continue
                    if any(entry.path == s.chunk_dir for s in stale):
                        continue
                    if now - entry.stat().st_mtime > retention:
                        shutil.rmtree(entry.path, ignore_errors=True)
                        removed += 1
            return removed

        loop = asyncio.get_event_loop()
        removed = await loop.run_in_executor(None, sweep)
        if removed:
            logger.info(f"Reclaimed {removed} stale upload sessions")
        return removed

    async def cleanup_old_uploads(self, now: Optional[float] = None) -> int:
        """Delete top-level uploaded files older than the maximum upload age."""
        now = now or time.time()
        max_age = self.settings.upload_max_age_seconds
        upload_dir = self.settings.upload_directory

        def sweep() -> int:
            removed = 0
            if not os.path.isdir(upload_dir):
                return 0
            for entry in os.scandir(upload_dir):
                if entry.is_file() and now - entry.stat().st_mtime > max_age:
                    try:
                        os.unlink(entry.path)
                        removed += 1
                        logger.info(f"Cleaned up old file: {entry.name}")
                    except OSError as e:
                        logger.warning(f"Failed to remove {entry.path}: {e}")
            return removed

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, sweep)


def _remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class UploadSessionNotFoundError(Exception):
    """Exception raised when an upload id has no live session."""
    pass


class IncompleteUploadError(Exception):
    """Exception raised when finalizing before every chunk arrived."""
    pass


class FinalizeConflictError(Exception):
    """Exception raised when a finalize is already running for the session."""
    pass


class MissingChunkError(Exception):
    """Exception raised when a counted chunk is missing from staging."""
    pass


class InvalidChunkError(Exception):
    """Exception raised for malformed chunk submissions."""
    pass
