"""
文章生成流水线
prompt 渲染 → 内容生成 → 解析 → slug → 内链、配图（尽力而为）→ 写库
单篇文章的完整流程，调度器的每个槽位和 test-prompt 都走这里
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.article_persister import ArticlePersister, STATUS_DRAFT, STATUS_PUBLISHED
from app.core.content_client import ContentGenerationClient, RawDraft
from app.core.generation_config import GenerationConfig
from app.core.image_service import ArticleImages, ImageService
from app.core.internal_linking import InternalLinker
from app.core.prompt_renderer import build_generation_prompt
from app.core.response_parser import ParsedArticle, parse
from app.core.result import StepResult
from app.core.slug_allocator import SlugAllocator
from app.models.article import Article

logger = logging.getLogger(__name__)


@dataclass
class Draft:
    """生成阶段的产物（尚未写库）"""
    prompt: str
    raw: RawDraft
    parsed: ParsedArticle


@dataclass
class PipelineOutcome:
    draft: Draft
    slug: str
    images: ArticleImages
    article: Article


class ArticlePipeline:
    """单篇文章生成流水线，依赖全部可注入"""

    def __init__(
        self,
        content_client: Optional[ContentGenerationClient] = None,
        image_service: Optional[ImageService] = None,
        slug_allocator: Optional[SlugAllocator] = None,
        persister: Optional[ArticlePersister] = None,
        linker: Optional[InternalLinker] = None,
        site_name: Optional[str] = None,
        site_description: Optional[str] = None,
    ):
        self.content_client = content_client or ContentGenerationClient()
        self.image_service = image_service or ImageService()
        self.slug_allocator = slug_allocator or SlugAllocator()
        self.persister = persister or ArticlePersister()
        self.linker = linker or InternalLinker()
        self.site_name = site_name if site_name is not None else settings.SITE_NAME
        self.site_description = (
            site_description if site_description is not None else settings.SITE_DESCRIPTION
        )

    async def draft(self, config: GenerationConfig, title: str) -> Draft:
        """
        渲染 prompt 并生成、解析文章

        Raises:
            GenerationTimeout / GenerationProviderError / MalformedGenerationOutput
        """
        prompt = build_generation_prompt(
            config, title, site_name=self.site_name, site_description=self.site_description
        )
        raw = await self.content_client.generate(prompt)
        parsed = parse(raw)
        return Draft(prompt=prompt, raw=raw, parsed=parsed)

    async def add_internal_links(
        self, session: AsyncSession, config: GenerationConfig, parsed: ParsedArticle
    ) -> ParsedArticle:
        """内链步骤：失败时丢弃错误，正文保持原样"""
        result = await self.linker.link(session, parsed.body, config.language)
        if not result.ok:
            logger.warning(f"内链注入失败，保留原正文: {result.error}")
        return replace(parsed, body=result.unwrap_or(parsed.body))

    async def fetch_images(self, config: GenerationConfig, parsed: ParsedArticle) -> ArticleImages:
        """配图步骤：失败时丢弃错误，返回空结果"""
        if not (config.include_images or config.include_cover_image):
            return ArticleImages()
        try:
            result = await self.image_service.fetch(config, parsed.keywords)
        except Exception as e:
            result = StepResult.failure(str(e))
        if not result.ok:
            logger.warning(f"配图失败，文章将不带图片: {result.error}")
        return result.unwrap_or(ArticleImages())

    async def run(
        self,
        session: AsyncSession,
        config: GenerationConfig,
        title: str,
        author_id: str,
        now: Optional[datetime] = None,
    ) -> PipelineOutcome:
        """
        执行完整流水线并写入文章（未提交，由调用方提交）

        Raises:
            GenerationError / MalformedGenerationOutput / DuplicateSlug
        """
        draft = await self.draft(config, title)
        slug = self.slug_allocator.allocate(draft.parsed.title, config.language)
        draft.parsed = await self.add_internal_links(session, config, draft.parsed)
        images = await self.fetch_images(config, draft.parsed)

        article = await self.persister.create(
            session,
            draft.parsed,
            slug=slug,
            language=config.language,
            author_id=author_id,
            images=images,
            status=STATUS_PUBLISHED if config.auto_publish else STATUS_DRAFT,
            now=now,
        )
        return PipelineOutcome(draft=draft, slug=slug, images=images, article=article)
