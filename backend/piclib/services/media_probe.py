from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import anyio
from PIL import ExifTags, Image, UnidentifiedImageError

from piclib.core.errors import UnrecognizedMedia

logger = logging.getLogger(__name__)

MediaKind = Literal["picture", "video"]

# Windows XP* tags hold UTF-16LE text.
_XP_TITLE = 0x9C9B
_XP_COMMENT = 0x9C9C
_XP_KEYWORDS = 0x9C9E


@dataclass(slots=True)
class ExtractedMetadata:
    title: str | None = None
    comments: str | None = None
    tags: list[str] = field(default_factory=list)
    camera_make: str | None = None
    camera_model: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None
    captured_at: datetime | None = None


@dataclass(slots=True)
class ProbeResult:
    width: int
    height: int
    format: str
    metadata: ExtractedMetadata = field(default_factory=ExtractedMetadata)


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value).replace("\x00", "").strip()
    return text or None


def _xp_text(value: Any) -> str | None:
    if isinstance(value, tuple):
        value = bytes(value)
    if isinstance(value, bytes):
        return _clean_text(value.decode("utf-16-le", errors="ignore"))
    return _clean_text(value)


def _gps_coordinate(values: Any, ref: Any) -> float | None:
    try:
        degrees, minutes, seconds = (float(v) for v in values)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    result = degrees + minutes / 60.0 + seconds / 3600.0
    if str(ref or "").upper() in ("S", "W"):
        result = -result
    return round(result, 7)


def _exif_datetime(value: Any) -> datetime | None:
    text = _clean_text(value)
    if not text:
        return None
    try:
        return datetime.strptime(text, "%Y:%m:%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def extract_exif(img: Image.Image) -> ExtractedMetadata:
    meta = ExtractedMetadata()
    exif = img.getexif()
    if not exif:
        return meta
    meta.camera_make = _clean_text(exif.get(ExifTags.Base.Make))
    meta.camera_model = _clean_text(exif.get(ExifTags.Base.Model))
    meta.title = _xp_text(exif.get(_XP_TITLE)) or _clean_text(exif.get(ExifTags.Base.ImageDescription))
    meta.comments = _xp_text(exif.get(_XP_COMMENT))
    keywords = _xp_text(exif.get(_XP_KEYWORDS))
    if keywords:
        meta.tags = [tag.strip() for tag in keywords.split(";") if tag.strip()]

    sub_ifd = exif.get_ifd(ExifTags.IFD.Exif)
    meta.captured_at = _exif_datetime(sub_ifd.get(ExifTags.Base.DateTimeOriginal)) or _exif_datetime(
        exif.get(ExifTags.Base.DateTime)
    )

    gps = exif.get_ifd(ExifTags.IFD.GPSInfo)
    if gps:
        meta.latitude = _gps_coordinate(gps.get(ExifTags.GPS.GPSLatitude), gps.get(ExifTags.GPS.GPSLatitudeRef))
        meta.longitude = _gps_coordinate(gps.get(ExifTags.GPS.GPSLongitude), gps.get(ExifTags.GPS.GPSLongitudeRef))
        altitude = gps.get(ExifTags.GPS.GPSAltitude)
        if altitude is not None:
            try:
                meta.altitude = float(altitude)
                if gps.get(ExifTags.GPS.GPSAltitudeRef) in (1, b"\x01"):
                    meta.altitude = -meta.altitude
            except (TypeError, ValueError, ZeroDivisionError):
                meta.altitude = None
    return meta


def probe_picture(path: Path) -> ProbeResult:
    try:
        with Image.open(path) as img:
            width, height = img.size
            image_format = (img.format or "").lower()
            metadata = extract_exif(img)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise UnrecognizedMedia(f"Unrecognized picture file: {path.name}") from exc
    return ProbeResult(width=int(width), height=int(height), format=image_format, metadata=metadata)


def parse_ffprobe_output(raw: str | bytes) -> ProbeResult:
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        raise UnrecognizedMedia("ffprobe returned invalid JSON") from exc
    streams = payload.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video or not video.get("width") or not video.get("height"):
        raise UnrecognizedMedia("No video stream found")
    fmt = payload.get("format") or {}
    tags = fmt.get("tags") or {}
    captured_at = None
    created = tags.get("creation_time")
    if created:
        try:
            captured_at = datetime.fromisoformat(str(created).replace("Z", "+00:00"))
        except ValueError:
            captured_at = None
    metadata = ExtractedMetadata(
        title=_clean_text(tags.get("title")),
        comments=_clean_text(tags.get("comment")),
        captured_at=captured_at,
    )
    return ProbeResult(
        width=int(video["width"]),
        height=int(video["height"]),
        format=str(fmt.get("format_name") or video.get("codec_name") or ""),
        metadata=metadata,
    )


class MediaProber:
    """Reads dimensions and embedded metadata from local picture and video files."""

    def __init__(self, ffprobe_path: str = "ffprobe") -> None:
        self.ffprobe_path = ffprobe_path

    async def probe(self, path: Path, kind: MediaKind) -> ProbeResult:
        if kind == "picture":
            return await anyio.to_thread.run_sync(probe_picture, path)
        return await self._probe_video(path)

    async def _probe_video(self, path: Path) -> ProbeResult:
        cmd = [
            self.ffprobe_path,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            result = await anyio.run_process(cmd, check=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            logger.info("video_probe_failed", extra={"path": str(path), "error": str(exc)})
            raise UnrecognizedMedia(f"Unrecognized video file: {path.name}") from exc
        return parse_ffprobe_output(result.stdout)
