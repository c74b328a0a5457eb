"""
图片服务
Unsplash 图库搜索，Pexels 兜底；下载到本地并用 Pillow 校验、统一转为 JPEG。
整个流程是尽力而为：任何失败都只会让文章少几张图，不会中断文章生成。
"""

import io
import os
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import httpx
from PIL import Image as PILImage

from app.config import settings
from app.core.generation_config import GenerationConfig
from app.core.result import StepResult

logger = logging.getLogger(__name__)

UNSPLASH_SEARCH_URL = "https://api.unsplash.com/search/photos"
PEXELS_SEARCH_URL = "https://api.pexels.com/v1/search"

# 对外暴露的图片路径前缀（main.py 中挂载 IMAGES_DIR）
PUBLIC_PREFIX = "/api/images"

MAX_CONTENT_IMAGES = 3


@dataclass
class ArticleImages:
    """文章配图结果"""
    cover_image: Optional[str] = None
    content_images: list[str] = field(default_factory=list)


def pick_search_keywords(
    config: GenerationConfig, seo_keywords: Iterable[str] = ()
) -> list[str]:
    """
    关键词回退顺序：设置中的图片关键词 → 生成的 SEO 关键词 → 目标关键词
    """
    for candidates in (config.image_search_keywords, seo_keywords, config.target_keywords):
        keywords = [k.strip() for k in candidates or () if k and k.strip()]
        if keywords:
            return keywords
    return []


def content_image_count(number_of_paragraphs: int) -> int:
    """正文配图数量：每两段一张，最多 3 张"""
    return max(0, min(MAX_CONTENT_IMAGES, number_of_paragraphs // 2))


class ImageService:
    """图片服务：Unsplash 优先，Pexels 兜底"""

    def __init__(
        self,
        unsplash_key: Optional[str] = None,
        pexels_key: Optional[str] = None,
        images_dir: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.unsplash_key = unsplash_key if unsplash_key is not None else settings.UNSPLASH_ACCESS_KEY
        self.pexels_key = pexels_key if pexels_key is not None else settings.PEXELS_API_KEY
        self.images_dir = images_dir or settings.IMAGES_DIR
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout, trust_env=False, transport=self._transport
        )

    # ---- 搜索 ----

    async def search_unsplash(self, query: str, count: int) -> list[str]:
        """在 Unsplash 搜索横图，返回图片 URL 列表（regular 尺寸，约 1080px 宽）"""
        async with self._client(30.0) as client:
            response = await client.get(
                UNSPLASH_SEARCH_URL,
                headers={"Authorization": f"Client-ID {self.unsplash_key}"},
                params={"query": query, "per_page": count, "orientation": "landscape"},
            )
            response.raise_for_status()
            data = response.json()
        return [item["urls"]["regular"] for item in data.get("results", [])]

    async def search_pexels(self, query: str, count: int) -> list[str]:
        """在 Pexels 搜索横图，返回图片 URL 列表（large 尺寸）"""
        async with self._client(30.0) as client:
            response = await client.get(
                PEXELS_SEARCH_URL,
                headers={"Authorization": self.pexels_key},
                params={"query": query, "per_page": count, "orientation": "landscape"},
            )
            response.raise_for_status()
            data = response.json()
        return [item["src"]["large"] for item in data.get("photos", [])]

    async def search_images(self, keywords: list[str], count: int) -> list[str]:
        """
        搜索图片：Unsplash 失败或无结果时回退 Pexels，都不可用时返回空列表
        """
        query = " ".join(keywords)

        if self.unsplash_key:
            try:
                urls = await self.search_unsplash(query, count)
                if urls:
                    return urls[:count]
                logger.warning(f"Unsplash 未找到: '{query}'")
            except Exception as e:
                logger.warning(f"Unsplash 搜索失败，尝试 Pexels: {e}")

        if self.pexels_key:
            try:
                return (await self.search_pexels(query, count))[:count]
            except Exception as e:
                logger.warning(f"Pexels 搜索失败: {e}")

        if not self.unsplash_key and not self.pexels_key:
            logger.warning("未配置 UNSPLASH_ACCESS_KEY / PEXELS_API_KEY，跳过图片搜索")
        return []

    # ---- 下载与保存 ----

    async def download_image(self, image_url: str, prefix: str = "content") -> str:
        """
        下载图片到 IMAGES_DIR/YYYYMMDD/ 并统一保存为 JPEG

        Returns:
            对外路径，如 "/api/images/20260212/cover-abc123.jpg"

        Raises:
            httpx.HTTPError: 下载失败
            PIL.UnidentifiedImageError: 内容不是有效图片
        """
        async with self._client(60.0) as client:
            response = await client.get(image_url)
            response.raise_for_status()

        # Pillow 验证和规范化
        img = PILImage.open(io.BytesIO(response.content))
        img.load()
        if img.mode != "RGB":
            img = img.convert("RGB")

        date_dir = datetime.now().strftime("%Y%m%d")
        save_dir = os.path.join(self.images_dir, date_dir)
        os.makedirs(save_dir, exist_ok=True)
        filename = f"{prefix}-{uuid.uuid4().hex[:12]}.jpg"
        img.save(os.path.join(save_dir, filename), "JPEG", quality=85)

        relative_path = f"{date_dir}/{filename}"
        logger.info(f"图片已保存: {relative_path} ({img.width}x{img.height})")
        return f"{PUBLIC_PREFIX}/{relative_path}"

    async def _download_all(self, urls: list[str], prefix: str) -> list[str]:
        """逐张下载，单张失败只跳过该图"""
        saved: list[str] = []
        for url in urls:
            try:
                saved.append(await self.download_image(url, prefix))
            except Exception as e:
                logger.warning(f"图片下载失败，跳过: {url[:80]} ({e})")
        return saved

    # ---- 编排 ----

    async def fetch(
        self, config: GenerationConfig, seo_keywords: Iterable[str] = ()
    ) -> StepResult[ArticleImages]:
        """
        获取文章封面图和正文配图

        Returns:
            StepResult：成功时为 ArticleImages（可能为空），
            出现意外错误时为 failure，由调用方降级为无图
        """
        images = ArticleImages()
        if not (config.include_cover_image or config.include_images):
            return StepResult.success(images)

        keywords = pick_search_keywords(config, seo_keywords)
        if not keywords:
            logger.warning("没有可用于图片搜索的关键词")
            return StepResult.success(images)

        try:
            if config.include_cover_image:
                covers = await self._download_all(
                    await self.search_images(keywords, 1), "cover"
                )
                images.cover_image = covers[0] if covers else None

            count = content_image_count(config.number_of_paragraphs)
            if config.include_images and count > 0:
                images.content_images = await self._download_all(
                    await self.search_images(keywords, count), "content"
                )
        except Exception as e:
            logger.error(f"图片搜索/下载出错: {e}")
            return StepResult.failure(str(e))

        logger.info(
            f"配图完成: cover={'有' if images.cover_image else '无'}, "
            f"content={len(images.content_images)} 张"
        )
        return StepResult.success(images)
