"""
Slug 分配
按语言生成 URL slug，并始终追加时间戳后缀保证唯一，无需查库。
时钟和随机源可注入，便于测试
"""

import random
import re
import string
import time
from typing import Callable, Optional

from slugify import slugify as transliterate_slug

MIN_SLUG_LENGTH = 3
RANDOM_SUFFIX_LENGTH = 6

_ALPHABET = string.digits + string.ascii_lowercase

# 阿拉伯语 slug 保留的字符：阿拉伯字母及其扩展区、表现形式区、拉丁字母数字
_ARABIC_DISALLOWED_RE = re.compile(
    r"[^\u0600-\u06FF\u0750-\u077F\uFB50-\uFDFF\uFE70-\uFEFFa-zA-Z0-9\s-]"
)
_SPACES_RE = re.compile(r"\s+")
_HYPHENS_RE = re.compile(r"-+")


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def slugify(title: str, locale: str) -> str:
    """不带后缀的 slug 候选，可能为空"""
    title = title or ""
    if locale == "ar":
        slug = _ARABIC_DISALLOWED_RE.sub("", title)
        slug = _SPACES_RE.sub("-", slug.strip()).lower()
    else:
        # python-slugify 音译非 ASCII 字母（ß → ss, Æ → ae）
        slug = transliterate_slug(title, lowercase=True)
    return _HYPHENS_RE.sub("-", slug).strip("-")


class SlugAllocator:
    """
    Slug 分配器

    Args:
        clock_ms: 返回当前毫秒时间戳的函数，默认取系统时间
        rng: random.Random 实例，用于兜底 slug 的随机后缀
    """

    def __init__(
        self,
        clock_ms: Optional[Callable[[], int]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._rng = rng or random.Random()
        self._last_ms = 0

    def _next_ms(self) -> int:
        # 同一毫秒内多次分配时顺延，保证同一实例产生的后缀不重复
        now = self._clock_ms()
        if now <= self._last_ms:
            now = self._last_ms + 1
        self._last_ms = now
        return now

    def _random_suffix(self) -> str:
        return "".join(self._rng.choice(_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))

    def allocate(self, title: str, locale: str) -> str:
        candidate = slugify(title, locale)
        millis = self._next_ms()
        if len(candidate) < MIN_SLUG_LENGTH:
            return f"article-{millis}-{self._random_suffix()}"
        return f"{candidate}-{to_base36(millis)}"
