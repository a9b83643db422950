from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import anyio

from piclib.core.errors import TranscodeError

logger = logging.getLogger(__name__)


class FfmpegTranscoder:
    """Frame extraction and format conversion through the ffmpeg binary."""

    def __init__(self, ffmpeg_path: str = "ffmpeg") -> None:
        self.ffmpeg_path = ffmpeg_path

    async def _run(self, cmd: list[str], *, action: str, source: Path) -> None:
        try:
            await anyio.run_process(cmd, check=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace")[-2000:]
            logger.warning("ffmpeg_failed", extra={"action": action, "path": str(source), "stderr": stderr})
            raise TranscodeError(f"ffmpeg {action} failed for {source.name}") from exc
        except OSError as exc:
            raise TranscodeError(f"ffmpeg is not available: {exc}") from exc

    async def extract_frame(self, source: Path, dest_dir: Path, *, offset: str = "00:00:02") -> Path:
        target = dest_dir / "frame.jpg"
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-ss",
            offset,
            "-i",
            str(source),
            "-frames:v",
            "1",
            "-q:v",
            "2",
            str(target),
        ]
        await self._run(cmd, action="extract_frame", source=source)
        if not target.exists():
            # Clips shorter than the offset produce no frame; fall back to the first one.
            cmd[cmd.index("-ss") + 1] = "0"
            await self._run(cmd, action="extract_frame", source=source)
        if not target.exists():
            raise TranscodeError(f"No frame could be extracted from {source.name}")
        return target

    async def transcode(self, source: Path, dest_dir: Path, *, target_format: str = "mp4") -> Path:
        target = dest_dir / f"converted.{target_format}"
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(source),
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            "aac",
            "-movflags",
            "+faststart",
            str(target),
        ]
        await self._run(cmd, action="transcode", source=source)
        return target
