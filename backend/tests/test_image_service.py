"""
Tests for stock image search and local storage.
"""

import io
import os

import httpx
import pytest
from PIL import Image as PILImage

from app.core.generation_config import GenerationConfig
from app.core.image_service import (
    PEXELS_SEARCH_URL,
    UNSPLASH_SEARCH_URL,
    ImageService,
    content_image_count,
    pick_search_keywords,
)


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    PILImage.new("RGBA", (8, 6), (200, 10, 10, 128)).save(buffer, "PNG")
    return buffer.getvalue()


class FakeStockApi:
    """Routes requests to canned Unsplash / Pexels / CDN answers."""

    def __init__(self, unsplash_status=200, unsplash_urls=None, pexels_urls=None, broken=()):
        self.unsplash_status = unsplash_status
        self.unsplash_urls = unsplash_urls or []
        self.pexels_urls = pexels_urls or []
        self.broken = set(broken)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(UNSPLASH_SEARCH_URL):
            if self.unsplash_status != 200:
                return httpx.Response(self.unsplash_status, json={"errors": ["nope"]})
            return httpx.Response(
                200, json={"results": [{"urls": {"regular": u}} for u in self.unsplash_urls]}
            )
        if url.startswith(PEXELS_SEARCH_URL):
            return httpx.Response(
                200, json={"photos": [{"src": {"large": u}} for u in self.pexels_urls]}
            )
        if url in self.broken:
            return httpx.Response(200, content=b"not an image")
        return httpx.Response(200, content=_png_bytes())

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _service(api: FakeStockApi, tmp_path, unsplash="u-key", pexels="p-key") -> ImageService:
    return ImageService(
        unsplash_key=unsplash,
        pexels_key=pexels,
        images_dir=str(tmp_path),
        transport=api.transport(),
    )


class TestKeywordSelection:
    """Test search keyword fallbacks."""

    def test_image_keywords_first(self):
        config = GenerationConfig(
            prompt_template="p", image_search_keywords=("office",), target_keywords=("t",)
        )
        assert pick_search_keywords(config, ["seo"]) == ["office"]

    def test_falls_back_to_seo_then_target(self):
        config = GenerationConfig(prompt_template="p", target_keywords=("target",))
        assert pick_search_keywords(config, ["seo", " "]) == ["seo"]
        assert pick_search_keywords(config, []) == ["target"]
        assert pick_search_keywords(GenerationConfig(prompt_template="p"), []) == []

    @pytest.mark.parametrize("paragraphs,expected", [(1, 0), (2, 1), (5, 2), (6, 3), (20, 3)])
    def test_content_image_count(self, paragraphs, expected):
        assert content_image_count(paragraphs) == expected


class TestSearch:
    """Test provider fallback."""

    async def test_unsplash_results(self, tmp_path):
        api = FakeStockApi(unsplash_urls=["https://img/1", "https://img/2"])
        urls = await _service(api, tmp_path).search_images(["solar", "panels"], 2)
        assert urls == ["https://img/1", "https://img/2"]
        assert api.requests[0].url.params["query"] == "solar panels"
        assert api.requests[0].headers["Authorization"] == "Client-ID u-key"

    async def test_pexels_fallback_on_error(self, tmp_path):
        api = FakeStockApi(unsplash_status=403, pexels_urls=["https://pex/1"])
        urls = await _service(api, tmp_path).search_images(["x"], 1)
        assert urls == ["https://pex/1"]

    async def test_pexels_fallback_on_empty(self, tmp_path):
        api = FakeStockApi(pexels_urls=["https://pex/1"])
        assert await _service(api, tmp_path).search_images(["x"], 1) == ["https://pex/1"]

    async def test_no_keys_configured(self, tmp_path):
        api = FakeStockApi(unsplash_urls=["https://img/1"])
        assert await _service(api, tmp_path, unsplash="", pexels="").search_images(["x"], 1) == []
        assert api.requests == []


class TestDownload:
    """Test local storage of downloaded images."""

    async def test_saved_as_jpeg(self, tmp_path):
        service = _service(FakeStockApi(), tmp_path)
        public_path = await service.download_image("https://cdn/pic.png", prefix="cover")

        assert public_path.startswith("/api/images/")
        relative = public_path[len("/api/images/"):]
        assert os.path.basename(relative).startswith("cover-")
        saved = tmp_path / relative
        assert saved.exists()
        with PILImage.open(saved) as img:
            assert img.format == "JPEG"
            assert img.mode == "RGB"
            assert img.size == (8, 6)

    async def test_invalid_image_rejected(self, tmp_path):
        service = _service(FakeStockApi(broken=["https://cdn/bad.png"]), tmp_path)
        with pytest.raises(Exception):
            await service.download_image("https://cdn/bad.png")


class TestFetch:
    """Test the cover + content image step."""

    async def test_cover_and_content_images(self, tmp_path):
        api = FakeStockApi(
            unsplash_urls=["https://cdn/a.png", "https://cdn/b.png", "https://cdn/c.png"],
            broken=["https://cdn/b.png"],
        )
        config = GenerationConfig(
            prompt_template="p",
            number_of_paragraphs=6,
            include_images=True,
            include_cover_image=True,
            target_keywords=("energy",),
        )
        result = await _service(api, tmp_path).fetch(config, seo_keywords=())
        assert result.ok
        images = result.value
        assert images.cover_image.startswith("/api/images/")
        # The broken download is skipped, the others are kept
        assert len(images.content_images) == 2

    async def test_disabled(self, tmp_path):
        api = FakeStockApi(unsplash_urls=["https://cdn/a.png"])
        config = GenerationConfig(
            prompt_template="p", include_images=False, include_cover_image=False
        )
        result = await _service(api, tmp_path).fetch(config, ["kw"])
        assert result.ok
        assert result.value.cover_image is None
        assert api.requests == []

    async def test_no_results_gives_empty_images(self, tmp_path):
        api = FakeStockApi()
        config = GenerationConfig(prompt_template="p", target_keywords=("x",))
        result = await _service(api, tmp_path).fetch(config)
        assert result.ok
        assert result.value.cover_image is None
        assert result.value.content_images == []
