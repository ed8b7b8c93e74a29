import asyncio
import base64
import re
from io import BytesIO
from pathlib import Path
from typing import Iterable, List, Tuple, Union

import requests
from PIL import Image, ImageOps, UnidentifiedImageError
from loguru import logger

from .errors import UnreadableImage
from .models import GeneratedPage, UploadedPhoto, is_data_url

MAX_DIMENSION = 1200
JPEG_QUALITY = 85
OUTPUT_MIME_TYPE = "image/jpeg"


def compute_target_size(width: int, height: int, max_dimension: int = MAX_DIMENSION) -> Tuple[int, int]:
    """Bound the longer side by ``max_dimension`` while keeping the aspect ratio.

    The scale factor is capped at 1.0, so images are never upscaled.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image dimensions: {width}x{height}")

    if width >= height:
        scale = min(1.0, max_dimension / width)
    else:
        scale = min(1.0, max_dimension / height)

    new_width = max(1, round(width * scale))
    new_height = max(1, round(height * scale))
    return new_width, new_height


def normalize_image(
    raw_image: bytes,
    max_dimension: int = MAX_DIMENSION,
    quality: int = JPEG_QUALITY,
) -> UploadedPhoto:
    """
    Decode an arbitrary uploaded image and re-encode it as a bounded JPEG.

    Args:
        raw_image: Raw file bytes as uploaded by the user.
        max_dimension: Upper bound for both width and height.
        quality: JPEG quality factor (1-95).

    Returns:
        UploadedPhoto holding the base64 encoded JPEG.

    Raises:
        UnreadableImage: If the data cannot be decoded as an image.
    """
    if not raw_image:
        raise UnreadableImage("No image data provided")

    try:
        img = Image.open(BytesIO(raw_image))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise UnreadableImage(f"Could not decode image: {e}") from e

    logger.debug(f"Loaded upload: format={img.format}, mode={img.mode}, size={img.size}")

    # Respect camera orientation before measuring
    img = ImageOps.exif_transpose(img)

    # JPEG has no alpha channel; flatten transparent areas onto white
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, "white")
        background.paste(img, mask=img.split()[-1])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")

    target_size = compute_target_size(img.width, img.height, max_dimension)
    if target_size != img.size:
        logger.info(f"Resizing upload from {img.width}x{img.height} to {target_size[0]}x{target_size[1]}")
        img = img.resize(target_size, Image.Resampling.LANCZOS)

    buffer = BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")

    logger.info(f"Normalized upload: {img.width}x{img.height}, {len(buffer.getvalue())} bytes")
    return UploadedPhoto(mime_type=OUTPUT_MIME_TYPE, data=encoded)


async def normalize_image_async(
    raw_image: bytes,
    max_dimension: int = MAX_DIMENSION,
    quality: int = JPEG_QUALITY,
) -> UploadedPhoto:
    """Run :func:`normalize_image` off the event loop."""
    return await asyncio.to_thread(normalize_image, raw_image, max_dimension, quality)


def load_photo(
    path: Union[str, Path],
    max_dimension: int = MAX_DIMENSION,
    quality: int = JPEG_QUALITY,
) -> UploadedPhoto:
    """Read an image file from disk and normalize it."""
    path = Path(path)
    try:
        raw_image = path.read_bytes()
    except OSError as e:
        raise UnreadableImage(f"Could not read {path}: {e}") from e
    return normalize_image(raw_image, max_dimension, quality)


def export_filename(theme: str, page_number: int) -> str:
    """``crowdquest-<theme-with-dashes>-page-<n>.png``"""
    slug = re.sub(r"\s+", "-", theme.strip())
    return f"crowdquest-{slug}-page-{page_number}.png"


def _read_page_image(image_url: str, timeout: int) -> bytes:
    if is_data_url(image_url):
        return UploadedPhoto.from_data_url(image_url).to_bytes()
    response = requests.get(image_url, timeout=timeout)
    response.raise_for_status()
    return response.content


def export_pages(
    pages: Iterable[GeneratedPage],
    theme: str,
    output_dir: Union[str, Path],
    timeout: int = 60,
) -> List[Path]:
    """
    Write every page image of a book to ``output_dir`` as PNG.

    Inline (data URL) images are decoded directly; remote URLs are downloaded.

    Returns:
        Paths of the written files, in page order.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for page_number, page in enumerate(pages, 1):
        image_data = _read_page_image(page.image_url, timeout)
        try:
            img = Image.open(BytesIO(image_data))
            img.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise UnreadableImage(f"Page {page_number} image could not be decoded: {e}") from e

        file_path = output_dir / export_filename(theme, page_number)
        img.save(file_path, format="PNG")
        logger.info(f"Exported page {page_number} to {file_path}")
        written.append(file_path)

    return written
