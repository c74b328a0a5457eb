"""
生成配置快照
从数据库中的设置记录复制出不可变的配置对象，显式传入流水线各步骤，
流水线内部不读取任何全局设置
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional


def normalize_keywords(items) -> tuple[str, ...]:
    """去空白、去重，保持原有顺序"""
    seen: dict[str, None] = {}
    for item in items or []:
        text = str(item).strip()
        if text and text not in seen:
            seen[text] = None
    return tuple(seen)


@dataclass(frozen=True)
class GenerationConfig:
    prompt_template: str
    number_of_paragraphs: int = 5
    average_words_per_paragraph: int = 150
    target_keywords: tuple[str, ...] = field(default_factory=tuple)
    language: str = "ar"
    include_images: bool = True
    include_cover_image: bool = True
    image_search_keywords: tuple[str, ...] = field(default_factory=tuple)
    auto_publish: bool = False
    notify_on_completion: bool = False
    whatsapp_notification_numbers: tuple[str, ...] = field(default_factory=tuple)
    author_id: Optional[str] = None

    @classmethod
    def from_settings(cls, row, author_id: Optional[str] = None) -> "GenerationConfig":
        """从 AiArticleSettings ORM 对象构造快照"""
        return cls(
            prompt_template=row.prompt_template,
            number_of_paragraphs=row.number_of_paragraphs,
            average_words_per_paragraph=row.average_words_per_paragraph,
            target_keywords=normalize_keywords(row.target_keywords),
            language=row.language,
            include_images=row.include_images,
            include_cover_image=row.include_cover_image,
            image_search_keywords=normalize_keywords(row.image_search_keywords),
            auto_publish=row.auto_publish,
            notify_on_completion=row.notify_on_completion,
            whatsapp_notification_numbers=tuple(row.whatsapp_notification_numbers or ()),
            author_id=author_id or row.created_by,
        )

    def with_overrides(self, **changes) -> "GenerationConfig":
        """返回覆盖部分字段后的新快照（列表字段自动规范化）"""
        for key in ("target_keywords", "image_search_keywords"):
            if key in changes:
                changes[key] = normalize_keywords(changes[key])
        if "whatsapp_notification_numbers" in changes:
            changes["whatsapp_notification_numbers"] = tuple(
                changes["whatsapp_notification_numbers"] or ()
            )
        return replace(self, **changes)


def parse_generation_time(value: str) -> tuple[int, int]:
    """解析 HH:MM，非法值抛 ValueError"""
    hours_text, _, minutes_text = (value or "").partition(":")
    hours, minutes = int(hours_text), int(minutes_text)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"invalid generation time: {value!r}")
    return hours, minutes


def schedule_reached(start_date: datetime, generation_time: str, now: datetime) -> bool:
    """
    自动调度闸门：已到开始日期，且今天的生成时间已过
    """
    if now < start_date:
        return False
    hours, minutes = parse_generation_time(generation_time)
    today_slot = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    return now >= today_slot
