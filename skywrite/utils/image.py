"""Thumbnail re-encoding for link card uploads."""

from io import BytesIO
from typing import Tuple

from PIL import Image


THUMBNAIL_BOX: Tuple[int, int] = (800, 800)
JPEG_QUALITY = 85


def _to_rgb(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def prepare_thumbnail(image_bytes: bytes, box: Tuple[int, int] = THUMBNAIL_BOX) -> bytes:
    """Decode any supported image, fit it inside box and re-encode as JPEG."""
    with Image.open(BytesIO(image_bytes)) as img:
        img = _to_rgb(img)
        img.thumbnail(box, Image.Resampling.BILINEAR)
        output = BytesIO()
        img.save(output, format="JPEG", quality=JPEG_QUALITY, optimize=True)
        return output.getvalue()


def resize_to_aspect_ratio(image_bytes: bytes, target_aspect: float, image_format: str = "JPEG") -> bytes:
    """Resize to the target width/height ratio, shrinking the longer side."""
    with Image.open(BytesIO(image_bytes)) as img:
        width, height = img.size
        current_aspect = width / height

        if current_aspect > target_aspect:
            new_size = (int(height * target_aspect), height)
        elif current_aspect < target_aspect:
            new_size = (width, int(width / target_aspect))
        else:
            new_size = (width, height)

        resized = img.resize(new_size, Image.Resampling.BILINEAR)
        if image_format.upper() == "JPEG":
            resized = _to_rgb(resized)
        output = BytesIO()
        resized.save(output, format=image_format)
        return output.getvalue()
