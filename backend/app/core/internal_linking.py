"""
内链注入
从新文章正文提取关键词，在已发布文章中查找相关文章，
把正文里第一次出现的锚文本替换为指向相关文章的链接（每篇最多 5 个）。
属于尽力而为步骤，失败时正文保持原样
"""

import html
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.notification_service import article_url
from app.core.result import StepResult
from app.models.article import Article

logger = logging.getLogger(__name__)

MAX_INTERNAL_LINKS = 5
MAX_KEYWORDS = 20
# 查询相关文章时只用频率最高的前几个关键词
QUERY_KEYWORDS = 10
RELATED_LIMIT = 10
MIN_ANCHOR_LENGTH = 3

_ARABIC_STOP_WORDS = frozenset(
    "في من إلى على هذا هذه التي الذي أن ان مع عن أو و ال ما هو هي كان كانت يكون تكون "
    "لا نعم كل بعض أي قد لقد حيث بين عند منذ حتى إذا لكن بل ثم أما إما سوف قبل بعد "
    "فوق تحت أمام خلف داخل خارج".split()
)
_ENGLISH_STOP_WORDS = frozenset(
    "the a an is are was were be been being have has had do does did will would could "
    "should may might must shall can need dare ought used to of in for on with at by from "
    "as into through during before after above below between under again further then once "
    "here there when where why how all each few more most other some such no nor not only "
    "own same so than too very just and but if or because until while this that these those "
    "what which who whom i me my we our you your he him his she her it its they them their".split()
)

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WORD_SPLIT_RE = re.compile(r"[\s،,؛;:.!?؟\-()\[\]\"'/\\]+")
_TAG_SPLIT_RE = re.compile(r"(<[^>]+>)")
_ANCHOR_OPEN_RE = re.compile(r"<a[\s>]", re.IGNORECASE)
_ANCHOR_CLOSE_RE = re.compile(r"</a\s*>", re.IGNORECASE)


@dataclass
class LinkTarget:
    """可链接的相关文章"""
    title: str
    url: str
    anchor_texts: list[str] = field(default_factory=list)


def extract_keywords(content: str, language: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """去标签、去停用词和纯数字后按词频取前 limit 个"""
    text = _HTML_TAG_RE.sub(" ", content or "").lower()
    stop_words = _ARABIC_STOP_WORDS if language == "ar" else _ENGLISH_STOP_WORDS
    words = [
        word
        for word in _WORD_SPLIT_RE.split(text)
        if len(word) > 2 and word not in stop_words and not word.isdigit()
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


def _like(keyword: str) -> str:
    escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def find_related_articles(
    session: AsyncSession,
    keywords: Sequence[str],
    language: str,
    limit: int = RELATED_LIMIT,
    frontend_url: Optional[str] = None,
) -> list[LinkTarget]:
    """标题或正文包含任一关键词的已发布同语言文章，最新的在前"""
    conditions = []
    for keyword in list(keywords)[:QUERY_KEYWORDS]:
        pattern = _like(keyword)
        conditions.append(Article.title.ilike(pattern, escape="\\"))
        conditions.append(Article.content.ilike(pattern, escape="\\"))
    if not conditions:
        return []

    result = await session.execute(
        select(Article)
        .where(
            Article.status == "published",
            Article.language == language,
            or_(*conditions),
        )
        .order_by(Article.published_at.desc(), Article.id.desc())
        .limit(limit)
    )
    return [
        LinkTarget(
            title=article.title,
            url=article_url(article, frontend_url),
            anchor_texts=[article.title, *(article.tags or [])[:3]],
        )
        for article in result.scalars().all()
    ]


def _link_first(parts: list[str], pattern: re.Pattern, target: LinkTarget) -> bool:
    """在链接之外的第一个文本片段里替换一次，parts 原地更新"""
    in_anchor = False
    for index, part in enumerate(parts):
        if part.startswith("<"):
            if _ANCHOR_OPEN_RE.match(part):
                in_anchor = True
            elif _ANCHOR_CLOSE_RE.match(part):
                in_anchor = False
            continue
        if in_anchor or not part:
            continue
        match = pattern.search(part)
        if match is None:
            continue
        link = (
            f'<a href="{html.escape(target.url)}" title="{html.escape(target.title)}" '
            f'class="internal-link">{match.group(1)}</a>'
        )
        replaced = part[: match.start()] + link + part[match.end():]
        parts[index:index + 1] = _TAG_SPLIT_RE.split(replaced)
        return True
    return False


def inject_links(
    content: str, targets: Sequence[LinkTarget], max_links: int = MAX_INTERNAL_LINKS
) -> tuple[str, int]:
    """
    每个相关文章最多链接一次，按锚文本顺序尝试

    Returns:
        (新正文, 新增链接数)
    """
    parts = _TAG_SPLIT_RE.split(content or "")
    added = 0
    for target in targets:
        if added >= max_links:
            break
        for anchor in target.anchor_texts:
            if not anchor or len(anchor) < MIN_ANCHOR_LENGTH:
                continue
            pattern = re.compile(rf"(?<!\w)({re.escape(anchor)})(?!\w)", re.IGNORECASE)
            if _link_first(parts, pattern, target):
                added += 1
                break
    return "".join(parts), added


class InternalLinker:
    """
    内链注入步骤

    Args:
        max_links: 每篇文章最多新增的链接数
        frontend_url: 链接前缀，默认取配置
    """

    def __init__(self, max_links: int = MAX_INTERNAL_LINKS, frontend_url: Optional[str] = None):
        self.max_links = max_links
        self.frontend_url = frontend_url

    async def link(self, session: AsyncSession, content: str, language: str) -> StepResult[str]:
        """返回加了内链的正文；存储层异常向上抛出，其余失败返回 failure"""
        try:
            keywords = extract_keywords(content, language)
            if not keywords:
                return StepResult.success(content)
            targets = await find_related_articles(
                session, keywords, language, frontend_url=self.frontend_url
            )
            linked, added = inject_links(content, targets, self.max_links)
        except SQLAlchemyError:
            raise
        except Exception as e:
            return StepResult.failure(str(e))

        if added:
            logger.info(f"已注入内链 {added} 个（候选文章 {len(targets)} 篇）")
        return StepResult.success(linked)
