"""
文章持久化
把解析后的文章、slug、配图写入 articles 表
"""

import html
import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateSlug
from app.core.image_service import ArticleImages
from app.core.response_parser import ParsedArticle
from app.models.article import Article
from app.models.base import local_now

logger = logging.getLogger(__name__)

STATUS_DRAFT = "draft"
STATUS_PUBLISHED = "published"

_PARAGRAPH_END_RE = re.compile(r"</p>", re.IGNORECASE)


def embed_content_images(body: str, image_urls: list[str], alt: str = "") -> str:
    """
    把正文配图均匀插入到段落之后；
    段落数不足时剩余图片追加到末尾
    """
    if not image_urls:
        return body

    ends = [m.end() for m in _PARAGRAPH_END_RE.finditer(body)]
    alt_attr = html.escape(alt, quote=True)
    figures = [
        f'\n<figure><img src="{html.escape(url, quote=True)}" alt="{alt_attr}" loading="lazy" /></figure>\n'
        for url in image_urls
    ]

    if not ends:
        return body + "".join(figures)

    # 第 i 张图放在第 (i+1) * n / (k+1) 段之后
    step = len(ends) / (len(figures) + 1)
    inserts: dict[int, list[str]] = {}
    leftover: list[str] = []
    for i, figure in enumerate(figures):
        index = int(round(step * (i + 1))) - 1
        if 0 <= index < len(ends):
            inserts.setdefault(ends[index], []).append(figure)
        else:
            leftover.append(figure)

    parts: list[str] = []
    cursor = 0
    for position in sorted(inserts):
        parts.append(body[cursor:position])
        parts.extend(inserts[position])
        cursor = position
    parts.append(body[cursor:])
    parts.extend(leftover)
    return "".join(parts)


def apply_status(article: Article, status: str, now: Optional[datetime] = None) -> None:
    """设置文章状态；发布时间只在首次发布时写入"""
    article.status = status
    if status == STATUS_PUBLISHED and article.published_at is None:
        article.published_at = now or local_now()


class ArticlePersister:
    """文章写入器"""

    async def create(
        self,
        session: AsyncSession,
        parsed: ParsedArticle,
        slug: str,
        language: str,
        author_id: str,
        images: Optional[ArticleImages] = None,
        status: str = STATUS_DRAFT,
        now: Optional[datetime] = None,
    ) -> Article:
        """
        创建文章记录

        Raises:
            DuplicateSlug: slug 与已有文章冲突（会话已不可继续使用，调用方需回滚）
        """
        images = images or ArticleImages()
        keywords = list(parsed.keywords)

        article = Article(
            title=parsed.title,
            slug=slug,
            excerpt=parsed.excerpt,
            content=embed_content_images(parsed.body, images.content_images, parsed.title),
            language=language,
            tags=keywords,
            seo={
                "title": parsed.seo.get("title", ""),
                "description": parsed.seo.get("description", ""),
                "keywords": keywords,
            },
            cover_image=images.cover_image,
            content_images=list(images.content_images),
            created_by=author_id,
            generated_with_model=parsed.model,
            created_at=now or local_now(),
        )
        apply_status(article, status, now)

        session.add(article)
        try:
            await session.flush()
        except IntegrityError as e:
            logger.error(f"slug 冲突: {slug}")
            raise DuplicateSlug(slug) from e

        logger.info(f"文章已创建: id={article.id}, slug={slug}, status={article.status}")
        return article
