"""
生成设置仓储
每个部署只有一条设置记录；流水线只接收由它生成的 GenerationConfig 快照
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings as app_settings
from app.core.errors import ConfigurationMissing
from app.core.generation_config import GenerationConfig, normalize_keywords, parse_generation_time
from app.models.ai_article import AiArticleSettings
from app.models.base import local_now

logger = logging.getLogger(__name__)

# 允许通过 save() 修改的字段
EDITABLE_FIELDS = (
    "prompt_template",
    "number_of_paragraphs",
    "average_words_per_paragraph",
    "target_keywords",
    "language",
    "include_images",
    "include_cover_image",
    "image_search_keywords",
    "auto_publish",
    "total_articles_needed",
    "articles_per_day",
    "start_date",
    "generation_time",
    "whatsapp_notification_numbers",
    "notify_on_completion",
    "is_active",
)


async def get(session: AsyncSession) -> Optional[AiArticleSettings]:
    result = await session.execute(
        select(AiArticleSettings).order_by(AiArticleSettings.id).limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_raise(session: AsyncSession) -> AiArticleSettings:
    row = await get(session)
    if row is None:
        raise ConfigurationMissing()
    return row


async def get_or_create(
    session: AsyncSession, created_by: Optional[str] = None
) -> AiArticleSettings:
    row = await get(session)
    if row is None:
        row = AiArticleSettings(created_by=created_by, created_at=local_now(), ready_titles=[])
        session.add(row)
        await session.flush()
        logger.info("已创建默认文章生成设置")
    return row


async def save(
    session: AsyncSession,
    changes: dict[str, Any],
    updated_by: Optional[str] = None,
) -> AiArticleSettings:
    """
    创建或部分更新设置，值为 None 的字段保持不变

    Raises:
        ValueError: 生成时间格式非法
    """
    row = await get_or_create(session, created_by=updated_by)
    for key, value in changes.items():
        if key not in EDITABLE_FIELDS or value is None:
            continue
        if key == "generation_time":
            hours, minutes = parse_generation_time(value)
            value = f"{hours:02d}:{minutes:02d}"
        elif key in ("target_keywords", "image_search_keywords"):
            value = list(normalize_keywords(value))
        elif key == "whatsapp_notification_numbers":
            value = [str(n).strip() for n in value if str(n).strip()]
        setattr(row, key, value)

    row.updated_by = updated_by
    row.updated_at = local_now()
    await session.flush()
    return row


def resolve_author(row: AiArticleSettings) -> str:
    """文章作者：设置创建人，未指定时使用默认作者"""
    return row.created_by or app_settings.DEFAULT_AUTHOR_ID


def snapshot(row: AiArticleSettings) -> GenerationConfig:
    return GenerationConfig.from_settings(row, author_id=resolve_author(row))
