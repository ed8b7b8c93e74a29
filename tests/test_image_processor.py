import asyncio
from io import BytesIO

import pytest
from PIL import Image

from crowdquest.errors import UnreadableImage
from crowdquest.image_processor import (
    compute_target_size,
    export_filename,
    export_pages,
    load_photo,
    normalize_image,
    normalize_image_async,
)
from crowdquest.models import GeneratedPage

from tests.fakes import make_image_bytes


def decode(photo) -> Image.Image:
    return Image.open(BytesIO(photo.to_bytes()))


@pytest.mark.parametrize("size,expected", [
    ((3000, 1500), (1200, 600)),
    ((1500, 3000), (600, 1200)),
    ((1200, 1200), (1200, 1200)),
    ((2400, 2400), (1200, 1200)),
    ((800, 600), (800, 600)),
    ((1199, 50), (1199, 50)),
    ((4000, 3), (1200, 1)),
])
def test_compute_target_size(size, expected):
    assert compute_target_size(*size) == expected


def test_compute_target_size_rejects_empty_image():
    with pytest.raises(ValueError):
        compute_target_size(0, 10)


def test_large_landscape_is_downscaled():
    photo = normalize_image(make_image_bytes(size=(3000, 1500)))

    img = decode(photo)
    assert img.size == (1200, 600)
    assert img.format == "JPEG"
    assert photo.mime_type == "image/jpeg"
    assert photo.data_url.startswith("data:image/jpeg;base64,")


def test_small_image_is_not_upscaled():
    img = decode(normalize_image(make_image_bytes(size=(640, 480))))
    assert img.size == (640, 480)


def test_transparent_png_is_flattened():
    raw = make_image_bytes(size=(100, 50), color=(0, 0, 255, 0), mode="RGBA")

    img = decode(normalize_image(raw))

    assert img.mode == "RGB"
    r, g, b = img.getpixel((50, 25))
    assert r > 240 and g > 240 and b > 240


def test_respects_custom_bounds():
    img = decode(normalize_image(make_image_bytes(size=(1000, 500)), max_dimension=500, quality=50))
    assert img.size == (500, 250)


@pytest.mark.parametrize("raw", [b"", b"definitely not an image", b"not an image at all " * 20])
def test_unreadable_input(raw):
    with pytest.raises(UnreadableImage):
        normalize_image(raw)


def test_oversized_upload_is_unreadable(monkeypatch):
    # Pillow refuses images over twice MAX_IMAGE_PIXELS outright
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

    with pytest.raises(UnreadableImage):
        normalize_image(make_image_bytes(size=(64, 48)))


def test_export_oversized_page_is_unreadable(monkeypatch, tmp_path, photo):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

    with pytest.raises(UnreadableImage):
        export_pages([GeneratedPage(photo.data_url)], "Jungle", tmp_path / "out")


def test_load_photo_missing_file(tmp_path):
    with pytest.raises(UnreadableImage):
        load_photo(tmp_path / "missing.jpg")


def test_load_photo_reads_file(tmp_path):
    path = tmp_path / "me.png"
    path.write_bytes(make_image_bytes(size=(2000, 1000)))

    assert decode(load_photo(path)).size == (1200, 600)


def test_export_filename_replaces_whitespace():
    assert export_filename("Cyberpunk  Tokyo at night", 2) == "crowdquest-Cyberpunk-Tokyo-at-night-page-2.png"


def test_export_pages_writes_pngs(tmp_path, photo):
    pages = [GeneratedPage(photo.data_url), GeneratedPage(photo.data_url)]

    written = export_pages(pages, "Jungle", tmp_path / "out")

    assert [path.name for path in written] == ["crowdquest-Jungle-page-1.png", "crowdquest-Jungle-page-2.png"]
    for path in written:
        assert Image.open(path).format == "PNG"


def test_normalize_off_the_event_loop():
    photo = asyncio.run(normalize_image_async(make_image_bytes(size=(2400, 1200))))
    assert decode(photo).size == (1200, 600)
