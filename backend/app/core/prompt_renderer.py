"""
Prompt 模板渲染
模板中只识别一组固定的命名占位符（{{title}} 等），通过查表替换；
未识别的占位符原样保留，模板格式错误也不会报错
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from app.core.generation_config import GenerationConfig

PLACEHOLDERS = (
    "title",
    "keywords",
    "paragraphs",
    "wordsPerParagraph",
    "language",
    "siteName",
    "siteDescription",
)

LANGUAGE_NAMES = {"ar": "Arabic", "en": "English"}

KEYWORD_SEPARATOR = ", "

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# 追加在用户模板之后的输出格式约束，不允许在设置中修改
JSON_FORMAT_INSTRUCTION = """

IMPORTANT: You MUST output the article in the following JSON format (this is required):
{
  "title": "Article title",
  "excerpt": "2-3 sentence summary",
  "content": "Full article with HTML formatting (use <p>, <h2>, <h3>, <strong>, <em> tags)",
  "seoTitle": "Meta title under 60 characters",
  "seoDescription": "Meta description under 160 characters",
  "seoKeywords": ["keyword1", "keyword2", "keyword3"]
}

Return ONLY the JSON object, no additional text or markdown code blocks."""


@dataclass(frozen=True)
class PromptVariables:
    title: str
    keywords: Iterable[str] = field(default_factory=tuple)
    paragraphs: int = 5
    words_per_paragraph: int = 150
    language: str = "ar"
    site_name: Optional[str] = None
    site_description: Optional[str] = None

    def as_lookup(self) -> dict[str, str]:
        return {
            "title": self.title,
            "keywords": KEYWORD_SEPARATOR.join(self.keywords),
            "paragraphs": str(self.paragraphs),
            "wordsPerParagraph": str(self.words_per_paragraph),
            "language": LANGUAGE_NAMES.get(self.language, self.language),
            "siteName": self.site_name or "",
            "siteDescription": self.site_description or "",
        }


def render(template: str, variables: PromptVariables) -> str:
    """填充模板中所有已识别的占位符"""
    lookup = variables.as_lookup()

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name in lookup:
            return lookup[name]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_substitute, template or "")


def build_generation_prompt(
    config: GenerationConfig,
    title: str,
    site_name: Optional[str] = None,
    site_description: Optional[str] = None,
) -> str:
    """渲染设置中的模板，并追加固定的 JSON 输出格式要求"""
    variables = PromptVariables(
        title=title,
        keywords=config.target_keywords,
        paragraphs=config.number_of_paragraphs,
        words_per_paragraph=config.average_words_per_paragraph,
        language=config.language,
        site_name=site_name,
        site_description=site_description,
    )
    return render(config.prompt_template, variables) + JSON_FORMAT_INSTRUCTION
