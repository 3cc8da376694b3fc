# app/infra/image_processor.py
"""
Image validation and size-budget compression for uploaded favicons and logos.

Stages (each raises its own ImageError subtype):
- Content-type allow-list check (before any decoding)
- Decode + single proportional resize to the max dimension
- Quality-stepped re-encode until the byte budget is met or quality floors out
- Final size guard before anything is handed to storage

Compression is best-effort: once quality reaches the floor the last encode is
accepted even if it is still over budget. The size guard then rejects it, so
an oversized file never reaches storage.
"""
from __future__ import annotations

import io
from dataclasses import dataclass, field

from PIL import Image, ImageFile, ImageOps

from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Reject corrupted uploads instead of decoding partial rasters
ImageFile.LOAD_TRUNCATED_IMAGES = False

# Decompression bomb protection: parsing limit, not the output limit.
# Anything that parses is resized down to max_dimension anyway.
Image.MAX_IMAGE_PIXELS = 50_000_000


class ImageError(Exception):
    """Base exception for image upload errors"""

    reason: str = "image_error"


class ImageUnsupportedFormatError(ImageError):
    """Declared content type is not on the allow-list"""

    reason = "unsupported_format"


class ImageDecodeError(ImageError):
    """File could not be decoded into a raster"""

    reason = "decode_error"


class ImageCompressionError(ImageError):
    """Re-encoding produced no data"""

    reason = "compression_error"


class ImageTooLargeError(ImageError):
    """File is still over the byte budget after compression"""

    reason = "size_exceeded"


ALLOWED_CONTENT_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/avif",
})

# Content type -> file extension, used when the upload has no usable filename
EXTENSION_BY_CONTENT_TYPE = {
    "image/jpeg": "jpeg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/avif": "avif",
}

_OUTPUT_CONTENT_TYPES = {
    "WEBP": "image/webp",
    "JPEG": "image/jpeg",
}


@dataclass(frozen=True)
class ImageConfig:
    """Limits for the upload pipeline. Qualities are fractions in (0, 1]."""
    max_file_size_bytes: int = 1024 * 1024  # 1 MiB
    max_dimension: int = 1080
    initial_quality: float = 0.8
    quality_step: float = 0.1
    quality_floor: float = 0.1
    output_format: str = "WEBP"
    allowed_content_types: frozenset[str] = field(default=ALLOWED_CONTENT_TYPES)

    @classmethod
    def from_settings(cls, s=None) -> "ImageConfig":
        """Build config from application settings."""
        if s is None:
            from app.config import settings as s

        return cls(
            max_file_size_bytes=s.image_max_file_size_bytes,
            max_dimension=s.image_max_dimension,
            initial_quality=s.image_initial_quality,
            quality_step=s.image_quality_step,
            quality_floor=s.image_quality_floor,
            output_format=s.image_output_format,
            allowed_content_types=s.image_allowed_type_set,
        )

    @property
    def output_content_type(self) -> str:
        return _OUTPUT_CONTENT_TYPES.get(self.output_format, "image/webp")


DEFAULT_CONFIG = ImageConfig()


@dataclass(frozen=True)
class SourceFile:
    """Raw upload as received from the caller"""
    data: bytes
    content_type: str
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class EncodedCandidate:
    """Accepted result of the quality search"""
    data: bytes
    content_type: str
    quality: float
    width: int
    height: int
    attempts: int

    @property
    def size(self) -> int:
        return len(self.data)


def validate_content_type(content_type: str | None, config: ImageConfig = DEFAULT_CONFIG) -> str:
    """
    Check the declared MIME type against the allow-list.

    Returns the normalized type (lowercase, parameters stripped).
    """
    normalized = (content_type or "").split(";", 1)[0].strip().lower()
    if normalized not in config.allowed_content_types:
        allowed = ", ".join(sorted(t.split("/", 1)[-1].upper() for t in config.allowed_content_types))
        raise ImageUnsupportedFormatError(
            f"Unsupported file format '{content_type or 'unknown'}', please upload {allowed}"
        )
    return normalized


def check_size(data: bytes, config: ImageConfig = DEFAULT_CONFIG) -> None:
    """Reject anything still over the byte budget."""
    if len(data) > config.max_file_size_bytes:
        raise ImageTooLargeError(
            f"File size {len(data)} bytes exceeds limit of "
            f"{config.max_file_size_bytes // 1024}KB"
        )


def fit_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """
    Scale (width, height) so the larger side equals max_dimension.

    Sizes already within the limit are returned unchanged.
    """
    if width <= max_dimension and height <= max_dimension:
        return width, height

    if width > height:
        return max_dimension, max(1, round(height * max_dimension / width))
    return max(1, round(width * max_dimension / height)), max_dimension


def quality_steps(config: ImageConfig = DEFAULT_CONFIG) -> list[int]:
    """
    Encoder qualities (percent) tried in order, e.g. [80, 70, ..., 10].

    Works in integer percent so the floor is hit exactly instead of
    drifting below it through float subtraction.
    """
    start = round(config.initial_quality * 100)
    step = round(config.quality_step * 100)
    floor = round(config.quality_floor * 100)
    if step <= 0:
        raise ValueError("quality_step must be positive")

    steps = [start]
    while steps[-1] > floor:
        steps.append(max(steps[-1] - step, floor))
    return steps


def decode_image(data: bytes) -> Image.Image:
    """Decode bytes into a fully loaded, orientation-corrected raster."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Image.DecompressionBombError as e:
        raise ImageDecodeError(f"Image dimensions exceed safety limit: {e}") from e
    except (OSError, SyntaxError, ValueError) as e:
        logger.warning(f"Image decode failed (possibly malformed file): {e}")
        raise ImageDecodeError("Failed to load image: corrupted or unreadable file") from e
    except MemoryError as e:
        logger.error(f"Memory error during image decode: {e}")
        raise ImageDecodeError("Image too large to decode") from e

    # Honor camera orientation before measuring
    return ImageOps.exif_transpose(img)


def _prepare_mode(img: Image.Image, output_format: str) -> Image.Image:
    """Convert to a mode the output encoder accepts."""
    has_alpha = img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )

    if output_format == "JPEG":
        if has_alpha:
            # JPEG has no alpha: flatten onto white
            rgba = img.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        return img if img.mode == "RGB" else img.convert("RGB")

    if has_alpha:
        return img if img.mode == "RGBA" else img.convert("RGBA")
    return img if img.mode == "RGB" else img.convert("RGB")


def encode_image(img: Image.Image, output_format: str, quality: int) -> bytes:
    """Encode a raster at the given quality percent."""
    output = io.BytesIO()
    try:
        if output_format == "JPEG":
            img.save(output, format="JPEG", quality=quality, optimize=True)
        else:
            img.save(output, format=output_format, quality=quality)
    except (OSError, ValueError, KeyError) as e:
        raise ImageCompressionError(f"Image compression failed: {e}") from e
    return output.getvalue()


def compress_image(data: bytes, config: ImageConfig = DEFAULT_CONFIG) -> EncodedCandidate:
    """
    Shrink an oversized image toward the byte budget.

    Steps:
    1. Decode (ImageDecodeError on failure)
    2. Resize once so the longest edge is at most max_dimension
    3. Re-encode at initial_quality, stepping down by quality_step while
       the result is over budget and quality is above the floor

    The floor-quality encode is returned even when still over budget.
    Callers must run check_size() before storing the result.
    """
    img = decode_image(data)
    width, height = img.size

    target = fit_dimensions(width, height, config.max_dimension)
    if target != (width, height):
        img = img.resize(target, Image.Resampling.LANCZOS)
        logger.info(f"Resized image from {width}x{height} to {target[0]}x{target[1]}")

    img = _prepare_mode(img, config.output_format)

    encoded = b""
    quality = 0
    attempts = 0
    for quality in quality_steps(config):
        attempts += 1
        encoded = encode_image(img, config.output_format, quality)
        if not encoded:
            raise ImageCompressionError("Image compression failed: encoder produced no data")

        logger.debug(f"Encode attempt {attempts}: quality={quality}, size={len(encoded)}")
        if len(encoded) <= config.max_file_size_bytes:
            break
    else:
        logger.warning(
            f"Quality floor reached with {len(encoded)} bytes "
            f"(limit {config.max_file_size_bytes})"
        )

    logger.info(
        f"Image compressed: {len(data) / 1024:.2f}KB -> {len(encoded) / 1024:.2f}KB "
        f"(quality={quality}, attempts={attempts}, dimensions={img.size[0]}x{img.size[1]})"
    )

    return EncodedCandidate(
        data=encoded,
        content_type=config.output_content_type,
        quality=quality / 100,
        width=img.size[0],
        height=img.size[1],
        attempts=attempts,
    )
