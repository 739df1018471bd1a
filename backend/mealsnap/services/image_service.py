"""
MealSnap Backend — Image Preprocessing Service
================================================

What:  Shrinks meal photos to a byte budget before they are sent for analysis.
How:   Pillow decodes the upload once, applies EXIF orientation, fits it inside
       a square bound, flattens it to RGB, then re-encodes JPEG at decreasing
       quality until the output fits. Pillow work runs in a worker thread so
       the event loop is never blocked by encoding.
Who:   MealService, before the identify call and before the image is stored.

Quality Schedule (defaults):
    85 → 75 → 65 → 55 → 45 → 35 → 25, stopping at the first output that fits.
    The 25 attempt is returned even if it is still over budget.
    The result is never larger than the input: if it would be, the input
    bytes are returned unchanged.
"""

import asyncio
import io
import logging
from typing import List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from mealsnap.exceptions import ImageProcessingError

logger = logging.getLogger(__name__)


class ImageService:
    """
    JPEG re-encoder with a size budget.

    Args:
        max_dimension: Bound for both width and height; smaller images are not upscaled
        initial_quality: JPEG quality of the first attempt
        quality_step: Quality decrement between attempts
        min_quality: Quality floor; an attempt at or below it is never made
    """

    def __init__(
        self,
        max_dimension: int = 1024,
        initial_quality: int = 85,
        quality_step: int = 10,
        min_quality: int = 20,
    ):
        if quality_step < 1:
            raise ValueError("quality_step must be >= 1")
        self.max_dimension = max_dimension
        self.initial_quality = initial_quality
        self.quality_step = quality_step
        self.min_quality = min_quality

    def quality_schedule(self) -> List[int]:
        """Every quality the encoder may try, in order."""
        qualities = [self.initial_quality]
        while qualities[-1] - self.quality_step > self.min_quality:
            qualities.append(qualities[-1] - self.quality_step)
        return qualities

    async def compress(self, image: bytes, max_size_kb: int = 1024) -> bytes:
        """
        Re-encode `image` to fit within max_size_kb kilobytes, best effort.

        Raises:
            ImageProcessingError: The bytes cannot be decoded or encoded
        """
        if not image:
            raise ImageProcessingError("The image is empty", context={"size_bytes": 0})
        return await asyncio.to_thread(self._compress_sync, image, max_size_kb * 1024)

    # ── Worker Thread ─────────────────────────────────────────────────────

    def _compress_sync(self, image: bytes, budget: int) -> bytes:
        prepared = self._prepare(image)

        output: Optional[bytes] = None
        used_quality = self.initial_quality
        for quality in self.quality_schedule():
            output = self._encode(prepared, quality)
            used_quality = quality
            if len(output) <= budget:
                break

        if output is None or len(output) > len(image):
            logger.info(
                "Compressed image (%d bytes) not smaller than original (%d bytes); keeping original",
                len(output or b""),
                len(image),
            )
            return image

        logger.info(
            "Compressed image %d → %d bytes at quality %d (budget %d bytes)",
            len(image),
            len(output),
            used_quality,
            budget,
        )
        return output

    def _prepare(self, image: bytes) -> Image.Image:
        """Decode, orient, bound and flatten to RGB. Runs once per compress call."""
        try:
            img = Image.open(io.BytesIO(image))
            img = ImageOps.exif_transpose(img)
            img.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
            return self._to_rgb(img)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise ImageProcessingError(
                "The image could not be decoded",
                context={"size_bytes": len(image), "error": str(exc)},
            ) from exc

    @staticmethod
    def _to_rgb(img: Image.Image) -> Image.Image:
        # Transparent pixels are composited onto white
        if img.mode in ("RGBA", "LA", "P"):
            if img.mode == "P":
                img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            return background
        if img.mode != "RGB":
            return img.convert("RGB")
        return img

    @staticmethod
    def _encode(img: Image.Image, quality: int) -> bytes:
        output = io.BytesIO()
        try:
            img.save(output, format="JPEG", quality=quality, optimize=True)
        except (OSError, ValueError) as exc:
            raise ImageProcessingError(
                "The image could not be encoded",
                context={"quality": quality, "error": str(exc)},
            ) from exc
        return output.getvalue()


async def compress_image(image_bytes: bytes, max_size_kb: int = 1024) -> bytes:
    """Compress with the default schedule (1024px bound, quality 85 down to 25)."""
    return await ImageService().compress(image_bytes, max_size_kb)
