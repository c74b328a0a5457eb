"""
AI 文章生成模型
生成设置（单例）+ 候选标题池 + 生成任务台账
"""

import math
from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String, Text, DateTime, Boolean, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, local_now

DEFAULT_PROMPT_TEMPLATE = """Role & Mindset (Mandatory):
You are a senior content strategist and professional human writer, not an AI.
Write as if you have real-world experience, editorial judgment, and market awareness.
Your writing must sound naturally human, confident, persuasive, and commercially aware,
suitable for a senior Saudi / GCC market audience of {{siteName}}.

Task:
Write a high-quality, professional blog article about:
Title: {{title}}

Language & Audience:
- Write in {{language}}
- Target a senior, educated, decision-making audience

Content Structure Requirements:
- Total paragraphs: {{paragraphs}}
- Each paragraph: approximately {{wordsPerParagraph}} words
- Include a strong introduction and a clear conclusion

SEO & Keyword Strategy:
- Naturally integrate these keywords without forced repetition: {{keywords}}
- Optimize for search intent, not keyword stuffing

Headings & Formatting:
- Use H2 for main sections and H3 for subsections
- Use bullet points only when they add clarity

Tone & Style Guidelines:
- Professional, authoritative, and engaging
- Avoid overused AI phrases ("In today's fast-paced world", "Moreover", "Furthermore")

Site context: {{siteDescription}}"""

# 任务状态
JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"


class AiArticleSettings(Base):
    """文章生成设置表（每个部署只有一条记录）"""
    __tablename__ = "ai_article_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ---- Prompt 配置 ----
    prompt_template: Mapped[str] = mapped_column(
        Text, nullable=False, default=DEFAULT_PROMPT_TEMPLATE
    )

    # ---- 文章配置 ----
    number_of_paragraphs: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    average_words_per_paragraph: Mapped[int] = mapped_column(Integer, nullable=False, default=150)
    target_keywords: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)
    # 语言：ar / en
    language: Mapped[str] = mapped_column(String(2), nullable=False, default="ar")

    # ---- 图片配置 ----
    include_images: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    include_cover_image: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    image_search_keywords: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)

    # ---- 发布配置 ----
    auto_publish: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ---- 调度配置 ----
    total_articles_needed: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    articles_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=local_now)
    # HH:MM
    generation_time: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ---- WhatsApp 通知 ----
    whatsapp_notification_numbers: Mapped[list | None] = mapped_column(
        JSON, nullable=True, default=list
    )
    notify_on_completion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # ---- 进度 ----
    articles_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)

    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, default=None)
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=local_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)

    # 候选标题，按插入顺序（FIFO）
    ready_titles = relationship(
        "ReadyTitle",
        order_by="ReadyTitle.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def remaining_articles(self) -> int:
        return max(0, self.total_articles_needed - self.articles_generated)

    @property
    def unused_titles_count(self) -> int:
        return sum(1 for t in self.ready_titles if not t.used)

    @property
    def estimated_days_remaining(self) -> int:
        if self.articles_per_day <= 0:
            return 0
        return math.ceil(self.remaining_articles / self.articles_per_day)

    @property
    def progress_percentage(self) -> int:
        if self.total_articles_needed <= 0:
            return 100
        return round(self.articles_generated / self.total_articles_needed * 100)


class ReadyTitle(Base):
    """候选标题表"""
    __tablename__ = "ready_titles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settings_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ai_article_settings.id"), nullable=False, index=True
    )
    # 池内顺序
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
    article_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("articles.id"), nullable=True, default=None
    )
    # 当前持有该标题的任务（认领锁），为空表示可被认领
    claimed_job_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=local_now)


class AiArticleJob(Base):
    """生成任务表（每次生成尝试一条）"""
    __tablename__ = "ai_article_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settings_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ai_article_settings.id"), nullable=False
    )
    title_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ready_titles.id"), nullable=False
    )
    title_used: Mapped[str] = mapped_column(String(500), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    # pending / processing / completed / failed / cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JOB_PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    article_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("articles.id"), nullable=True, default=None
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default=None)

    # ---- 执行信息 ----
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=None)
    # 生成内容摘要 {"title", "excerpt", "content_length", "image_urls"}
    generated_content: Mapped[dict | None] = mapped_column(JSON, nullable=True, default=None)

    # ---- 通知 ----
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
    notification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True, default=None)
    # 批次汇总是否已处理（仅自动批次发送汇总消息）
    summary_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ---- 批次 ----
    batch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, default=None, index=True)
    batch_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=local_now)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)

    article = relationship("Article", lazy="selectin")
