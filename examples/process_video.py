#!/usr/bin/env python3
"""
cutdown - End-to-end client for the processing API.

Uploads a local video (chunked and in parallel when it is large), validates a
cut list, runs processing while polling progress, and downloads the archive.

Usage Examples:
    # Clips from a cut list in both aspect ratios
    python examples/process_video.py talk.mp4 --cuts "0:16-0:35\n0:44-1:01" --ratio 16:9 9:16

    # Random quick-start cuts plus stills and GIF loops
    python examples/process_video.py talk.mp4 --random --stills --loops

    # Cut list from a file, fades, compressed output
    python examples/process_video.py talk.mp4 --cuts-file cuts.txt --fade 0.5 --quality compressed

    # Just check API health
    python examples/process_video.py --health-only
"""

import argparse
import math
import os
import sys
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Optional

import requests
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# Configuration
# ============================================================================

class ClientConfig:
    """Client configuration loaded from environment and defaults."""

    BASE_URL = os.getenv("CUTDOWN_API_URL", "http://localhost:8000")

    # Files above this size are sent in chunks
    CHUNKED_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 50 * 1024 * 1024  # 50MB
    PARALLEL_CHUNKS = 3
    CHUNK_TIMEOUT = 60  # seconds per chunk request

    # Output directory
    OUTPUT_DIR = Path("downloads")

    # Polling configuration
    POLL_INTERVAL = 2  # seconds
    PROCESS_TIMEOUT = 3 * 3600  # 3 hours max


# ============================================================================
# API Client
# ============================================================================

class CutdownAPIClient:
    """Client for interacting with the cutdown API."""

    def __init__(self, base_url: str = None):
        self.base_url = base_url or ClientConfig.BASE_URL
        self.session = requests.Session()

    def health_check(self) -> dict:
        """Check API health status."""
        response = self.session.get(f"{self.base_url}/health")
        response.raise_for_status()
        return response.json()

    def get_presets(self) -> dict:
        """Get quality tiers and aspect ratios."""
        response = self.session.get(f"{self.base_url}/api/presets")
        response.raise_for_status()
        return response.json()

    def upload_file(self, path: Path) -> dict:
        """Upload a small file in one request."""
        with open(path, "rb") as f:
            response = self.session.post(
                f"{self.base_url}/api/upload",
                files={"file": (path.name, f)},
            )
        response.raise_for_status()
        return response.json()

    def upload_chunk(
        self,
        upload_id: str,
        file_name: str,
        chunk_index: int,
        total_chunks: int,
        data: bytes,
    ) -> dict:
        """Send one chunk of a large upload."""
        # Plain requests.post: a Session is not safe to share across threads
        response = requests.post(
            f"{self.base_url}/api/upload-chunk",
            files={"chunk": (f"{chunk_index:05d}.part", data)},
            data={
                "chunk_index": str(chunk_index),
                "total_chunks": str(total_chunks),
                "upload_id": upload_id,
                "file_name": file_name,
            },
            timeout=ClientConfig.CHUNK_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def finalize_upload(self, upload_id: str, file_name: str, total_size: int) -> dict:
        """Assemble the uploaded chunks."""
        response = self.session.post(
            f"{self.base_url}/api/finalize-upload",
            json={"upload_id": upload_id, "file_name": file_name, "total_size": total_size},
        )
        response.raise_for_status()
        return response.json()

    def get_video(self, video_id: int) -> dict:
        response = self.session.get(f"{self.base_url}/api/video/{video_id}")
        response.raise_for_status()
        return response.json()

    def parse_timestamps(self, text: str, video_id: int) -> dict:
        """Validate a cut list against the video."""
        response = self.session.post(
            f"{self.base_url}/api/parse-timestamps",
            json={"text": text, "video_id": video_id},
        )
        response.raise_for_status()
        return response.json()

    def generate_cuts(self, video_id: int) -> dict:
        """Generate a random quick-start cut list."""
        response = self.session.post(
            f"{self.base_url}/api/generate-cuts",
            json={"video_id": video_id},
        )
        response.raise_for_status()
        return response.json()

    def process_clips(self, payload: dict) -> dict:
        """Run processing (blocks until the job finishes)."""
        response = requests.post(
            f"{self.base_url}/api/process-clips",
            json=payload,
            timeout=ClientConfig.PROCESS_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def get_progress(self, video_id: int) -> Optional[dict]:
        response = requests.get(f"{self.base_url}/api/processing-progress/{video_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def cancel(self, video_id: int) -> dict:
        response = self.session.post(f"{self.base_url}/api/cancel-processing/{video_id}")
        response.raise_for_status()
        return response.json()

    def download_archive(self, video_id: int, output_dir: Path) -> Path:
        """Stream the job archive to disk."""
        output_dir.mkdir(parents=True, exist_ok=True)
        with self.session.get(f"{self.base_url}/api/download/{video_id}", stream=True) as response:
            response.raise_for_status()
            disposition = response.headers.get("content-disposition", "")
            name = disposition.split("filename=")[-1].strip('"') if "filename=" in disposition else f"video-{video_id}.zip"
            target = output_dir / name
            with open(target, "wb") as f:
                for block in response.iter_content(chunk_size=1024 * 1024):
                    f.write(block)
        return target


# ============================================================================
# Runner
# ============================================================================

class ProcessRunner:
    """Drives one upload → validate → process → download session."""

    def __init__(self, client: CutdownAPIClient):
        self.client = client

    def print_header(self, title: str, char: str = "="):
        """Print formatted header."""
        line = char * 80
        print(f"\n{line}")
        print(f" {title}")
        print(f"{line}")

    def print_status(self, message: str, status: str = "INFO"):
        """Print status message with timestamp."""
        icons = {
            "INFO": "[i]",
            "SUCCESS": "[+]",
            "ERROR": "[x]",
            "WARNING": "[!]",
            "PROGRESS": "[~]",
        }
        timestamp = datetime.now().strftime("%H:%M:%S")
        print(f"[{timestamp}] {icons.get(status, '   ')} {message}")

    def upload(self, path: Path) -> dict:
        """Upload a file, choosing whole-file or chunked transfer by size."""
        size = path.stat().st_size
        self.print_header(f"UPLOADING {path.name} ({size / 1024 / 1024:.1f} MB)")

        if size <= ClientConfig.CHUNKED_THRESHOLD:
            video = self.client.upload_file(path)
            self.print_status(f"Uploaded as video {video['id']}", "SUCCESS")
            return video

        total_chunks = math.ceil(size / ClientConfig.CHUNK_SIZE)
        upload_id = uuid.uuid4().hex
        uploaded = 0
        lock = threading.Lock()
        self.print_status(
            f"Sending {total_chunks} chunks with {ClientConfig.PARALLEL_CHUNKS} parallel connections"
        )

        def send(index: int) -> None:
            nonlocal uploaded
            with open(path, "rb") as f:
                f.seek(index * ClientConfig.CHUNK_SIZE)
                data = f.read(ClientConfig.CHUNK_SIZE)
            self.client.upload_chunk(upload_id, path.name, index, total_chunks, data)
            with lock:
                uploaded += len(data)
                percent = round(uploaded / size * 100)
            self.print_status(f"Chunk {index + 1}/{total_chunks} uploaded ({percent}%)", "PROGRESS")

        with ThreadPoolExecutor(max_workers=ClientConfig.PARALLEL_CHUNKS) as pool:
            list(pool.map(send, range(total_chunks)))

        video = self.client.finalize_upload(upload_id, path.name, size)
        self.print_status(f"Finalized as video {video['id']}", "SUCCESS")
        return video

    def wait_for_duration(self, video_id: int, timeout: float = 60) -> Optional[float]:
        """Wait for the background duration probe."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            video = self.client.get_video(video_id)["video"]
            if video.get("duration_seconds"):
                self.print_status(f"Duration: {video['duration']}")
                return video["duration_seconds"]
            time.sleep(1)
        self.print_status("Duration not available yet", "WARNING")
        return None

    def process(self, payload: dict) -> Optional[dict]:
        """Run processing in a worker thread while polling progress."""
        self.print_header(f"PROCESSING VIDEO {payload['video_id']}", "-")
        outcome: dict = {}

        def run() -> None:
            try:
                outcome["result"] = self.client.process_clips(payload)
            except requests.HTTPError as e:
                outcome["error"] = e.response.text if e.response is not None else str(e)

        worker = threading.Thread(target=run, daemon=True)
        worker.start()

        last_percent = -1
        start = time.time()
        while worker.is_alive():
            progress = self.client.get_progress(payload["video_id"])
            if progress and progress["progress_percent"] != last_percent:
                last_percent = progress["progress_percent"]
                self.print_status(
                    f"[{last_percent:3d}%] [{time.time() - start:6.1f}s] "
                    f"{progress['completed_units']}/{progress['total_units']} units",
                    "PROGRESS",
                )
            worker.join(timeout=ClientConfig.POLL_INTERVAL)

        if "error" in outcome:
            self.print_status(f"Processing failed: {outcome['error']}", "ERROR")
            return None

        result = outcome["result"]
        self.print_status(result["message"], "SUCCESS" if result["status"] == "completed" else "WARNING")
        for error in result.get("errors", []):
            self.print_status(error, "WARNING")
        return result


# ============================================================================
# CLI Entry Point
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="cutdown - upload, process and download in one go",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration (via environment or .env):
  CUTDOWN_API_URL      API base URL (default: http://localhost:8000)
        """
    )

    parser.add_argument("video", nargs="?", type=Path, help="Local video file to upload")

    # Cut list options
    parser.add_argument("--cuts", type=str, default=None,
                        help="Cut list text (use \\n between ranges)")
    parser.add_argument("--cuts-file", type=Path, default=None,
                        help="File with one range per line")
    parser.add_argument("--random", action="store_true",
                        help="Use randomly generated quick-start cuts")

    # Output options
    parser.add_argument("--name", type=str, default=None,
                        help="Output base name (defaults to the file stem)")
    parser.add_argument("--ratio", type=str, nargs="+", default=["16:9"],
                        choices=["16:9", "9:16"], help="Aspect ratios for clips")
    parser.add_argument("--quality", type=str, default="balanced",
                        choices=["high", "balanced", "compressed"])
    parser.add_argument("--fade", type=float, default=None,
                        help="Fade video and audio in/out for this many seconds")
    parser.add_argument("--loops", action="store_true", help="Export GIF loops")
    parser.add_argument("--stills", action="store_true", help="Export still thumbnails")
    parser.add_argument("--shorts", action="store_true", help="Export vertical boomerang shorts")
    parser.add_argument("--output-dir", type=Path, default=ClientConfig.OUTPUT_DIR)

    # Utility options
    parser.add_argument("--health-only", action="store_true", help="Only run health check")

    args = parser.parse_args()
    client = CutdownAPIClient()
    runner = ProcessRunner(client)

    health = client.health_check()
    print(f"API {health['status']} (version {health['version']})")
    if args.health_only:
        return

    if args.video is None or not args.video.is_file():
        parser.error("a readable video file is required")

    video = runner.upload(args.video)
    video_id = video["id"]
    runner.wait_for_duration(video_id)

    cut_text = args.cuts.replace("\\n", "\n") if args.cuts else None
    if args.cuts_file:
        cut_text = args.cuts_file.read_text(encoding="utf-8")
    if args.random:
        cut_text = client.generate_cuts(video_id)["text"]
        print(f"Generated cuts:\n{cut_text}")

    if cut_text:
        validation = client.parse_timestamps(cut_text, video_id)
        for warning in validation["warnings"]:
            runner.print_status(warning, "WARNING")
        for error in validation["errors"]:
            runner.print_status(f"{error} (skipped)", "ERROR")
        if not validation["valid"] and not (args.loops or args.stills or args.shorts):
            sys.exit(1)

    payload = {
        "video_id": video_id,
        "time_range_text": cut_text,
        "output_name": args.name or args.video.stem,
        "quality": args.quality,
        "aspect_ratios": args.ratio,
        "generate_loops": args.loops,
        "generate_stills": args.stills,
        "generate_shorts": args.shorts,
    }
    if args.fade:
        payload.update({"video_fade": True, "audio_fade": True, "fade_duration": args.fade})

    result = runner.process(payload)
    if not result or not result.get("download_path"):
        sys.exit(1)

    archive = client.download_archive(video_id, args.output_dir)
    runner.print_status(f"Archive saved to {archive}", "SUCCESS")


if __name__ == "__main__":
    main()
