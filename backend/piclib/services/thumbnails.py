from __future__ import annotations

from io import BytesIO
from pathlib import Path

from PIL import Image, ImageOps

from piclib.core.config import settings


def thumbnail_dimensions() -> dict[str, tuple[int, int]]:
    return {
        "sm": (settings.thumbnail_sm_px, settings.thumbnail_sm_px),
        "md": (settings.thumbnail_md_px, settings.thumbnail_md_px),
        "lg": (settings.thumbnail_lg_px, settings.thumbnail_lg_px),
    }


def render_thumbnail(source: Path, size: str) -> bytes:
    """Render one thumbnail variant as JPEG bytes.

    EXIF orientation is applied first, then the picture is scaled (up or down)
    to fit the variant's bounding box so each size yields a distinct rendition.
    """
    dimensions = thumbnail_dimensions()[size]
    with Image.open(source) as img:
        out = ImageOps.exif_transpose(img).convert("RGB")
        out = ImageOps.contain(out, dimensions, method=Image.Resampling.LANCZOS)
        buffer = BytesIO()
        out.save(buffer, format="JPEG", optimize=True, quality=settings.thumbnail_jpeg_quality)
        return buffer.getvalue()
