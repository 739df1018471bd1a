"""
MealSnap Backend — File Service Unit Tests
============================================

What:  Tests for FileService validation (extension, size, image format) and storage.
How:   Real images generated with Pillow and pytest's tmp_path as storage root.

Test Strategy:
    ✅ Test allowed extensions (.jpg, .jpeg, .png, .webp)
    ✅ Test rejected extensions (.gif, .pdf, .exe, none)
    ✅ Test size limits (Content-Length and actual size)
    ✅ Test format detection (renamed non-images rejected)
    ✅ Test storage layout (per-user, date-organized, UUID names)
    ✅ Test cleanup of missing files
"""

import re
from pathlib import Path
from unittest.mock import patch

import pytest

from mealsnap.exceptions import FileStorageError, ValidationError
from mealsnap.services.file_service import FileService
from conftest import make_image


class TestFileValidation:
    """Tests for upload validation in FileService."""

    @pytest.fixture(autouse=True)
    def _service(self, temp_storage):
        """Create a fresh FileService with a 1MB limit for each test."""
        self.service = FileService(storage_root=temp_storage, max_file_size=1024 * 1024)

    # ── Extension Validation ──────────────────────────────────────────────

    def test_validate_extension_allowed(self):
        """JPG, JPEG, PNG and WEBP pass extension validation."""
        assert self.service.validate_extension("photo.jpg") == ".jpg"
        assert self.service.validate_extension("photo.jpeg") == ".jpeg"
        assert self.service.validate_extension("photo.png") == ".png"
        assert self.service.validate_extension("photo.webp") == ".webp"

    def test_validate_extension_uppercase(self):
        """Extension check is case-insensitive and normalizes to lowercase."""
        assert self.service.validate_extension("photo.JPG") == ".jpg"
        assert self.service.validate_extension("photo.Png") == ".png"

    @pytest.mark.parametrize("filename", ["animation.gif", "document.pdf", "malware.exe", "noextension"])
    def test_validate_extension_rejected(self, filename):
        with pytest.raises(ValidationError, match="not supported"):
            self.service.validate_extension(filename)

    # ── Size Validation ───────────────────────────────────────────────────

    def test_validate_size_within_limit(self):
        """Files within the size limit pass."""
        self.service.validate_size(None, 1000)

    def test_validate_size_at_limit(self):
        """Files exactly at the limit pass."""
        self.service.validate_size(1024 * 1024, 1024 * 1024)

    def test_validate_size_reported_over_limit(self):
        """An oversized Content-Length is rejected before the body matters."""
        with pytest.raises(ValidationError, match="exceeds maximum"):
            self.service.validate_size(1024 * 1024 + 1, 10)

    def test_validate_size_actual_over_limit(self):
        """A client misreporting Content-Length is caught by the real size."""
        with pytest.raises(ValidationError, match="exceeds maximum"):
            self.service.validate_size(100, 1024 * 1024 + 1)

    def test_validate_size_empty_file(self):
        with pytest.raises(ValidationError, match="empty"):
            self.service.validate_size(0, 0)

    # ── Format Validation ─────────────────────────────────────────────────

    def test_validate_format_jpeg(self, sample_jpeg_bytes):
        assert self.service.validate_image_format(sample_jpeg_bytes) == "JPEG"

    def test_validate_format_png(self, sample_png_bytes):
        assert self.service.validate_image_format(sample_png_bytes) == "PNG"

    def test_validate_format_not_an_image(self):
        """A text file renamed to .jpg is rejected."""
        with pytest.raises(ValidationError, match="not a readable image"):
            self.service.validate_image_format(b"hello, I am a text file")

    def test_validate_format_disallowed(self):
        """A real GIF is still not accepted."""
        with pytest.raises(ValidationError, match="not supported"):
            self.service.validate_image_format(make_image("GIF"))

    def test_validate_upload_returns_extension(self, sample_png_bytes):
        assert self.service.validate_upload("lunch.PNG", sample_png_bytes, len(sample_png_bytes)) == ".png"

    def test_validate_upload_checks_extension_first(self):
        """Extension fails before the content is inspected."""
        with patch.object(self.service, "validate_image_format") as check_format:
            with pytest.raises(ValidationError):
                self.service.validate_upload("notes.txt", b"data")
        check_format.assert_not_called()


class TestFileStorage:
    """Tests for store_image() and cleanup_file()."""

    @pytest.fixture(autouse=True)
    def _service(self, temp_storage):
        self.storage_root = Path(temp_storage).resolve()
        self.service = FileService(storage_root=temp_storage)

    @pytest.mark.asyncio
    async def test_store_creates_date_directory(self, sample_jpeg_bytes):
        """Files are stored under meals/<user>/YYYY/MM/DD/<uuid>.jpg."""
        abs_path, rel_path = await self.service.store_image(sample_jpeg_bytes, "user-1", ".jpg")

        assert re.fullmatch(
            r"meals/user-1/\d{4}/\d{2}/\d{2}/[0-9a-f-]{36}\.jpg", rel_path
        ), rel_path
        assert Path(abs_path) == self.storage_root / rel_path
        assert Path(abs_path).read_bytes() == sample_jpeg_bytes

    @pytest.mark.asyncio
    async def test_store_uses_unique_names(self, sample_jpeg_bytes):
        _, first = await self.service.store_image(sample_jpeg_bytes, "user-1")
        _, second = await self.service.store_image(sample_jpeg_bytes, "user-1")
        assert first != second

    @pytest.mark.asyncio
    async def test_store_rejects_path_like_user_id(self, sample_jpeg_bytes):
        """User ids cannot escape the storage root."""
        with pytest.raises(ValidationError):
            await self.service.store_image(sample_jpeg_bytes, "../../etc")

    @pytest.mark.asyncio
    async def test_store_write_failure(self, sample_jpeg_bytes):
        with patch("aiofiles.os.makedirs", side_effect=PermissionError("read-only")):
            with pytest.raises(FileStorageError):
                await self.service.store_image(sample_jpeg_bytes, "user-1")

    @pytest.mark.asyncio
    async def test_cleanup_removes_file(self, sample_jpeg_bytes):
        abs_path, _ = await self.service.store_image(sample_jpeg_bytes, "user-1")
        await self.service.cleanup_file(abs_path)
        assert not Path(abs_path).exists()

    @pytest.mark.asyncio
    async def test_cleanup_missing_file_is_quiet(self):
        """Cleaning up a file that is already gone does not raise."""
        await self.service.cleanup_file(str(self.storage_root / "missing.jpg"))
