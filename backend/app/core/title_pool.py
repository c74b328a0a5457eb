"""
候选标题池
标题按 position 先进先出；已使用或已被任务认领的标题不会再被选中
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.ai_article import ReadyTitle

logger = logging.getLogger(__name__)


async def next_available(
    session: AsyncSession, settings_id: int, exclude: Iterable[int] = ()
) -> Optional[ReadyTitle]:
    """
    按插入顺序取第一个未使用、未被认领的标题

    Args:
        exclude: 跳过的标题 id（同一批次内已失败的标题不在本批次重复尝试）
    """
    query = select(ReadyTitle).where(
        ReadyTitle.settings_id == settings_id,
        ReadyTitle.used == False,  # noqa: E712
        ReadyTitle.claimed_job_id.is_(None),
    )
    exclude = list(exclude)
    if exclude:
        query = query.where(ReadyTitle.id.notin_(exclude))
    result = await session.execute(
        query.order_by(ReadyTitle.position, ReadyTitle.id).limit(1)
    )
    return result.scalar_one_or_none()


async def add_titles(
    session: AsyncSession, settings_id: int, titles: Iterable[str]
) -> list[ReadyTitle]:
    """追加标题到池尾，去掉首尾空白并丢弃空标题"""
    cleaned = [t.strip() for t in titles if t and t.strip()]
    if not cleaned:
        return []

    max_position = (
        await session.execute(
            select(func.max(ReadyTitle.position)).where(ReadyTitle.settings_id == settings_id)
        )
    ).scalar()
    start = (max_position if max_position is not None else -1) + 1

    rows = [
        ReadyTitle(settings_id=settings_id, title=title, position=start + offset)
        for offset, title in enumerate(cleaned)
    ]
    session.add_all(rows)
    await session.flush()
    logger.info(f"新增标题 {len(rows)} 个")
    return rows


async def list_titles(
    session: AsyncSession, settings_id: int, status: str = "all"
) -> list[ReadyTitle]:
    """
    按状态列出标题

    Args:
        status: used / unused / all
    """
    query = select(ReadyTitle).where(ReadyTitle.settings_id == settings_id)
    if status == "used":
        query = query.where(ReadyTitle.used == True)  # noqa: E712
    elif status == "unused":
        query = query.where(ReadyTitle.used == False)  # noqa: E712
    result = await session.execute(query.order_by(ReadyTitle.position, ReadyTitle.id))
    return list(result.scalars().all())


async def count_titles(session: AsyncSession, settings_id: int) -> dict[str, int]:
    """已用 / 未用标题数"""
    result = await session.execute(
        select(ReadyTitle.used, func.count(ReadyTitle.id))
        .where(ReadyTitle.settings_id == settings_id)
        .group_by(ReadyTitle.used)
    )
    counts = {bool(used): count for used, count in result.all()}
    used, unused = counts.get(True, 0), counts.get(False, 0)
    return {"total": used + unused, "used": used, "unused": unused}


async def remove_title(session: AsyncSession, settings_id: int, title_id: int) -> Optional[bool]:
    """
    删除未使用的标题

    Returns:
        True 已删除；False 标题已使用或已被认领，拒绝删除；None 标题不存在
    """
    title = await session.get(ReadyTitle, title_id)
    if title is None or title.settings_id != settings_id:
        return None
    if title.used or title.claimed_job_id is not None:
        return False
    await session.delete(title)
    await session.flush()
    logger.info(f"已删除标题: id={title_id}")
    return True


async def reset_all(session: AsyncSession, settings_id: int) -> None:
    """把所有标题恢复为未使用"""
    await session.execute(
        update(ReadyTitle)
        .where(ReadyTitle.settings_id == settings_id)
        .values(used=False, used_at=None, article_id=None, claimed_job_id=None)
    )
