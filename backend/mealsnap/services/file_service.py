"""
MealSnap Backend — File Storage Service
=========================================

What:  Validates meal photo uploads and stores processed images on disk.
How:   Extension and size checks, then Pillow confirms the bytes decode as
       an allowed image format. Images are written with aiofiles under a
       per-user, date-organized directory with UUID filenames.
Who:   Called by MealService during the analyse workflow.
When:  Validation before preprocessing; storage after the recognition call.

Checks (cheapest first):
    1. Extension:      allow-list, no file reading
    2. Size:           Content-Length header, then actual byte count
    3. Image format:   Pillow reads the header and must report JPEG, PNG or WEBP;
                       a renamed non-image is rejected here
    4. UUID filename:  no user input reaches the stored file name

Directory Structure:
    storage/
    └── meals/
        └── <user_id>/
            └── 2024/
                └── 01/
                    └── 15/
                        └── a1b2c3d4-5678-....jpg
"""

import io
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import aiofiles
import aiofiles.os
from PIL import Image, UnidentifiedImageError

from mealsnap.exceptions import FileStorageError, ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}

# Pillow format names accepted for the allowed extensions
ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP"}

SAFE_USER_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class FileService:
    """
    Manages upload validation and the storage lifecycle of meal images.

    Args:
        storage_root:  Base directory for stored images (created if missing)
        max_file_size: Upload size limit in bytes
    """

    def __init__(self, storage_root: str, max_file_size: int = 10_485_760):
        self.storage_root = Path(storage_root).resolve()
        self.max_file_size = max_file_size
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("FileService initialized with storage_root=%s", self.storage_root)

    def validate_extension(self, filename: str) -> str:
        """Return the normalized extension, or raise ValidationError."""
        ext = Path(filename).suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message=(
                    f"File type '{ext}' is not supported. "
                    f"Allowed types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
                ),
                field="file",
                context={"extension": ext, "allowed": sorted(ALLOWED_EXTENSIONS)},
            )
        return ext

    def validate_size(self, content_length: Optional[int], actual_size: int) -> None:
        """
        Reject empty uploads and uploads over max_file_size.

        Content-Length is checked first since it is known before the body is
        read; the actual size catches clients that misreport it.
        """
        max_mb = self.max_file_size / (1024 * 1024)

        if content_length and content_length > self.max_file_size:
            raise ValidationError(
                message=f"File size exceeds maximum of {max_mb:.0f}MB. Please upload a smaller image.",
                field="file",
                context={"max_size_mb": max_mb, "reported_size": content_length},
            )

        if actual_size == 0:
            raise ValidationError(message="The uploaded file is empty.", field="file")

        if actual_size > self.max_file_size:
            raise ValidationError(
                message=f"File size ({actual_size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "actual_size": actual_size},
            )

    def validate_image_format(self, content: bytes) -> str:
        """
        Confirm the bytes are an image of an allowed format.

        Returns:
            Pillow format name (e.g. "JPEG")
        """
        try:
            with Image.open(io.BytesIO(content)) as img:
                image_format = img.format
                img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
            raise ValidationError(
                message="The uploaded file is not a readable image.",
                field="file",
                context={"error": str(e)},
            ) from e

        if image_format not in ALLOWED_FORMATS:
            raise ValidationError(
                message=(
                    f"Image format '{image_format}' is not supported. "
                    "The file must be a JPEG, PNG or WEBP image."
                ),
                field="file",
                context={"detected_format": image_format, "allowed": sorted(ALLOWED_FORMATS)},
            )
        return image_format

    def validate_upload(
        self,
        filename: str,
        content: bytes,
        content_length: Optional[int] = None,
    ) -> str:
        """Run every upload check in order; returns the normalized extension."""
        ext = self.validate_extension(filename)
        self.validate_size(content_length, len(content))
        self.validate_image_format(content)
        return ext

    def _generate_storage_path(self, user_id: str, extension: str) -> Tuple[Path, str]:
        if not SAFE_USER_ID.match(user_id):
            raise ValidationError(message="Invalid user id.", field="X-User-ID")
        now = datetime.now(timezone.utc)
        relative_path = f"meals/{user_id}/{now.strftime('%Y/%m/%d')}/{uuid.uuid4()}{extension}"
        return self.storage_root / relative_path, relative_path

    async def store_image(self, content: bytes, user_id: str, extension: str = ".jpg") -> Tuple[str, str]:
        """
        Write image bytes to disk.

        Returns:
            Tuple of (absolute_path, relative_path); the relative path is what
            gets persisted on the meal.

        Raises:
            FileStorageError: Directory creation or the write failed
        """
        absolute_path, relative_path = self._generate_storage_path(user_id, extension)

        try:
            await aiofiles.os.makedirs(absolute_path.parent, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store file at %s: %s", absolute_path, str(e))
            raise FileStorageError(
                message="Failed to save uploaded image. Please try again.",
                context={"path": relative_path, "os_error": str(e)},
            ) from e

        logger.info("File stored: %s (%d bytes)", relative_path, len(content))
        return str(absolute_path), relative_path

    async def cleanup_file(self, file_path: str) -> None:
        """
        Remove a stored file after a later step of the workflow failed.

        Best-effort: a missing file is fine and an OS error is only logged,
        so the original failure is what reaches the client.
        """
        path = Path(file_path)
        try:
            await aiofiles.os.remove(path)
            logger.info("Cleaned up file: %s", path.name)
        except FileNotFoundError:
            logger.debug("Cleanup: file already gone: %s", path.name)
        except OSError as e:
            logger.warning("Failed to clean up file %s: %s", file_path, str(e))
