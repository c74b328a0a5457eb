"""
生成结果解析
把 RawDraft 校验、规范化为统一的文章结构；
提供商没有按 JSON 返回时，按纯文本 / Markdown 兜底解析
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from app.core.content_client import RawDraft
from app.core.errors import MalformedGenerationOutput
from app.core.generation_config import normalize_keywords

SEO_TITLE_MAX = 60
SEO_DESCRIPTION_MAX = 160
EXCERPT_MAX = 200

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_WRAPPER_TAG_RE = re.compile(
    r"<!DOCTYPE[^>]*>|</?(?:html|body)[^>]*>|<head>[\s\S]*?</head>", re.IGNORECASE
)
_TAG_RE = re.compile(r"<[^>]+>")
_INLINE_SPACE_RE = re.compile(r"[ \t\u00a0]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


@dataclass(frozen=True)
class ParsedArticle:
    title: str
    body: str
    excerpt: str = ""
    # {"title", "description", "keywords": tuple}
    seo: dict = field(default_factory=dict)
    model: Optional[str] = None

    @property
    def keywords(self) -> tuple[str, ...]:
        return tuple(self.seo.get("keywords", ()))


def strip_wrapper(text: str) -> str:
    """去掉代码块围栏和 html/body 外壳"""
    text = (text or "").strip()
    text = _FENCE_RE.sub("", text)
    text = _WRAPPER_TAG_RE.sub("", text)
    return text.strip()


def normalize_whitespace(text: str) -> str:
    """合并行内空白和连续空行，去掉行尾空白"""
    text = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def single_line(text: str) -> str:
    return " ".join((text or "").split())


def plain_text(html: str) -> str:
    return single_line(_TAG_RE.sub(" ", html or ""))


def make_excerpt(body_html: str, limit: int = EXCERPT_MAX) -> str:
    text = plain_text(body_html)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def markdown_to_html(markdown: str) -> str:
    """基础 Markdown 转 HTML：标题、粗体、斜体、段落"""
    html = re.sub(r"^### (.+)$", r"<h3>\1</h3>", markdown, flags=re.M)
    html = re.sub(r"^## (.+)$", r"<h2>\1</h2>", html, flags=re.M)
    html = re.sub(r"^# (.+)$", r"<h1>\1</h1>", html, flags=re.M)
    html = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", html)
    html = re.sub(r"\*(.+?)\*", r"<em>\1</em>", html)
    html = re.sub(r"^(?!<[hH])(.+)$", r"<p>\1</p>", html, flags=re.M)
    return re.sub(r"<p>\s*</p>", "", html)


def _from_plain_text(raw: RawDraft) -> tuple[str, str, str, dict]:
    """纯文本兜底：第一个 # 标题（或第一行）作为标题，其余作为正文"""
    text = strip_wrapper(raw.raw_text)
    match = re.search(r"^#\s*(.+)$", text, flags=re.M) or re.search(r"^(.+)$", text, flags=re.M)
    title = match.group(1).strip() if match else ""
    body = text.replace(match.group(0), "", 1).strip() if match else text
    return title, markdown_to_html(normalize_whitespace(body)), "", {}


def parse(raw: RawDraft) -> ParsedArticle:
    """
    校验并规范化生成结果

    Raises:
        MalformedGenerationOutput: 标题或正文为空
    """
    if raw.structured:
        title, body, excerpt, seo = raw.title, raw.body, raw.excerpt, raw.seo or {}
    else:
        title, body, excerpt, seo = _from_plain_text(raw)

    title = single_line(strip_wrapper(title)).strip("#").strip()
    body = normalize_whitespace(strip_wrapper(body))

    if not title:
        raise MalformedGenerationOutput("Generated article has no title")
    if not plain_text(body):
        raise MalformedGenerationOutput("Generated article has no content")

    excerpt = single_line(excerpt) or make_excerpt(body)
    seo_title = single_line(seo.get("title")) or title
    seo_description = single_line(seo.get("description")) or excerpt

    return ParsedArticle(
        title=title,
        body=body,
        excerpt=excerpt,
        seo={
            "title": seo_title[:SEO_TITLE_MAX],
            "description": seo_description[:SEO_DESCRIPTION_MAX],
            "keywords": normalize_keywords(seo.get("keywords")),
        },
        model=raw.model,
    )
