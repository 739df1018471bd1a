"""
MealSnap Backend — Image Service Tests
========================================

What we test:
    ✅ Default quality schedule is 85 down to 25 in steps of 10
    ✅ Large images are bounded to 1024px and re-encoded as JPEG
    ✅ Qualities are tried in order until the output fits
    ✅ Output is never larger than the input
    ✅ Transparent images are flattened to RGB
    ✅ Undecodable or empty input raises ImageProcessingError
"""

import io
from unittest.mock import patch

import pytest
from PIL import Image

from mealsnap.exceptions import ImageProcessingError
from mealsnap.services.image_service import ImageService, compress_image
from conftest import make_image


class TestQualitySchedule:
    def test_default_schedule(self):
        assert ImageService().quality_schedule() == [85, 75, 65, 55, 45, 35, 25]

    def test_custom_schedule(self):
        service = ImageService(initial_quality=90, quality_step=30, min_quality=20)
        assert service.quality_schedule() == [90, 60, 30]

    def test_step_must_be_positive(self):
        with pytest.raises(ValueError):
            ImageService(quality_step=0)


class TestCompress:
    """Tests for ImageService.compress()."""

    def setup_method(self):
        self.service = ImageService()

    @pytest.mark.asyncio
    async def test_bounds_large_image(self):
        """A 1600x1200 photo is scaled to fit 1024x1024, keeping aspect ratio."""
        original = make_image("PNG", size=(1600, 1200), noise=True)
        result = await self.service.compress(original, max_size_kb=1024)

        with Image.open(io.BytesIO(result)) as img:
            assert img.format == "JPEG"
            assert img.size == (1024, 768)
        assert len(result) <= 1024 * 1024

    @pytest.mark.asyncio
    async def test_small_image_not_upscaled(self):
        original = make_image("PNG", size=(300, 200), noise=True)
        result = await self.service.compress(original)
        with Image.open(io.BytesIO(result)) as img:
            assert img.size == (300, 200)

    @pytest.mark.asyncio
    async def test_tries_qualities_in_order(self):
        """An unreachable budget walks the whole schedule."""
        original = make_image("PNG", size=(200, 200), noise=True)
        with patch.object(ImageService, "_encode", wraps=ImageService._encode) as encode:
            await self.service.compress(original, max_size_kb=1)

        qualities = [call.args[1] for call in encode.call_args_list]
        assert qualities == [85, 75, 65, 55, 45, 35, 25]

    @pytest.mark.asyncio
    async def test_stops_at_first_fit(self):
        """A generous budget is met on the first attempt."""
        original = make_image("PNG", size=(200, 200), noise=True)
        with patch.object(ImageService, "_encode", wraps=ImageService._encode) as encode:
            await self.service.compress(original, max_size_kb=1024)

        assert encode.call_count == 1
        assert encode.call_args.args[1] == 85

    @pytest.mark.asyncio
    async def test_never_larger_than_input(self):
        """A tiny PNG would grow as JPEG; the original bytes come back."""
        original = make_image("PNG", size=(8, 8))
        result = await self.service.compress(original)
        assert result is original

    @pytest.mark.asyncio
    async def test_transparency_flattened(self):
        original = make_image("PNG", size=(400, 400), mode="RGBA", noise=True)
        result = await self.service.compress(original)
        with Image.open(io.BytesIO(result)) as img:
            assert img.mode == "RGB"

    @pytest.mark.asyncio
    async def test_undecodable_bytes(self):
        with pytest.raises(ImageProcessingError, match="could not be decoded"):
            await self.service.compress(b"definitely not an image")

    @pytest.mark.asyncio
    async def test_empty_bytes(self):
        with pytest.raises(ImageProcessingError):
            await self.service.compress(b"")

    @pytest.mark.asyncio
    async def test_module_helper(self):
        original = make_image("PNG", size=(1200, 600), noise=True)
        result = await compress_image(original)
        with Image.open(io.BytesIO(result)) as img:
            assert img.size == (1024, 512)
