from io import BytesIO
from pathlib import Path

from PIL import Image

from piclib.core.config import settings
from piclib.services.thumbnails import render_thumbnail

from conftest import make_jpeg, write_file


def test_thumbnails_grow_with_size(tmp_path: Path) -> None:
    source = write_file(tmp_path / "p.jpg", make_jpeg((100, 100)))

    rendered = {size: render_thumbnail(source, size) for size in ("sm", "md", "lg")}

    assert 0 < len(rendered["sm"]) < len(rendered["md"]) < len(rendered["lg"])
    with Image.open(BytesIO(rendered["lg"])) as img:
        assert img.format == "JPEG"
        assert img.size == (settings.thumbnail_lg_px, settings.thumbnail_lg_px)


def test_thumbnail_keeps_aspect_ratio(tmp_path: Path) -> None:
    source = write_file(tmp_path / "wide.jpg", make_jpeg((400, 100)))
    with Image.open(BytesIO(render_thumbnail(source, "sm"))) as img:
        assert img.size == (settings.thumbnail_sm_px, settings.thumbnail_sm_px // 4)


def test_thumbnail_converts_palette_images(tmp_path: Path) -> None:
    source = tmp_path / "p.gif"
    Image.new("P", (50, 30)).save(source, format="GIF")
    with Image.open(BytesIO(render_thumbnail(source, "md"))) as img:
        assert img.mode == "RGB"
