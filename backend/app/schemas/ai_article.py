"""
AI 文章生成相关的 Pydantic 请求/响应模型
"""

import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ==================== 请求模型 ====================

class SettingsUpdateRequest(BaseModel):
    """创建/更新生成设置（未提供的字段保持不变）"""
    prompt_template: Optional[str] = Field(default=None, min_length=1, description="Prompt 模板")
    number_of_paragraphs: Optional[int] = Field(default=None, ge=2, le=20, description="段落数")
    average_words_per_paragraph: Optional[int] = Field(
        default=None, ge=50, le=500, description="每段平均词数"
    )
    target_keywords: Optional[list[str]] = Field(default=None, description="目标关键词")
    language: Optional[Literal["ar", "en"]] = Field(default=None, description="文章语言")
    include_images: Optional[bool] = None
    include_cover_image: Optional[bool] = None
    image_search_keywords: Optional[list[str]] = None
    auto_publish: Optional[bool] = None
    total_articles_needed: Optional[int] = Field(default=None, ge=1, description="目标文章总数")
    articles_per_day: Optional[int] = Field(default=None, ge=1, le=10, description="每日生成数")
    start_date: Optional[datetime] = Field(default=None, description="开始日期")
    generation_time: Optional[str] = Field(default=None, description="每日生成时间 HH:MM")
    whatsapp_notification_numbers: Optional[list[str]] = None
    notify_on_completion: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator("generation_time")
    @classmethod
    def _check_time(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _TIME_RE.match(value):
            raise ValueError("generation_time must be in HH:MM format")
        return value


class TitlesAddRequest(BaseModel):
    """批量添加标题"""
    titles: list[str] = Field(..., min_length=1, description="标题列表")


class TestPromptConfig(BaseModel):
    """test-prompt 可覆盖的配置"""
    number_of_paragraphs: Optional[int] = Field(default=None, ge=2, le=20)
    average_words_per_paragraph: Optional[int] = Field(default=None, ge=50, le=500)
    target_keywords: Optional[list[str]] = None
    language: Optional[Literal["ar", "en"]] = None


class TestPromptRequest(BaseModel):
    """用示例标题测试 prompt"""
    prompt_template: Optional[str] = Field(default=None, description="临时 Prompt 模板")
    sample_title: Optional[str] = Field(default=None, description="示例标题")
    settings: Optional[TestPromptConfig] = None


class GenerateNowRequest(BaseModel):
    """立即生成"""
    count: int = Field(default=1, description="生成篇数（1-10）")


class ResetRequest(BaseModel):
    """重置进度"""
    reset_titles: bool = Field(default=False, description="是否同时把所有标题恢复为未使用")


class TestWhatsappRequest(BaseModel):
    """WhatsApp 连接测试"""
    number: str = Field(..., min_length=1, description="接收测试消息的号码")


# ==================== 响应模型 ====================

class ReadyTitleResponse(BaseModel):
    """候选标题"""
    id: int
    title: str
    position: int
    used: bool
    used_at: Optional[datetime] = None
    article_id: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SettingsResponse(BaseModel):
    """生成设置"""
    id: int
    prompt_template: str
    number_of_paragraphs: int
    average_words_per_paragraph: int
    target_keywords: list[str] = []
    language: str
    include_images: bool
    include_cover_image: bool
    image_search_keywords: list[str] = []
    auto_publish: bool
    total_articles_needed: int
    articles_per_day: int
    start_date: datetime
    generation_time: str
    is_active: bool
    whatsapp_notification_numbers: list[str] = []
    notify_on_completion: bool
    articles_generated: int
    last_generated_at: Optional[datetime] = None
    remaining_articles: int
    unused_titles_count: int
    progress_percentage: int
    estimated_days_remaining: int
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator(
        "target_keywords", "image_search_keywords", "whatsapp_notification_numbers",
        mode="before",
    )
    @classmethod
    def _none_to_list(cls, value):
        return value or []


class SettingsEnvelope(BaseModel):
    """设置查询结果"""
    exists: bool
    settings: Optional[SettingsResponse] = None


class TitleListResponse(BaseModel):
    """标题列表"""
    titles: list[ReadyTitleResponse]
    total: int
    used: int
    unused: int


class TitlesAddResponse(BaseModel):
    """添加标题结果"""
    total_titles: int
    unused_titles: int
    added_count: int


class JobArticle(BaseModel):
    """任务关联的文章"""
    id: int
    title: str
    slug: str
    status: str

    model_config = {"from_attributes": True}


class JobResponse(BaseModel):
    """生成任务"""
    id: int
    title_id: int
    title_used: str
    scheduled_for: datetime
    status: str
    attempts: int
    max_attempts: int
    article_id: Optional[int] = None
    failure_reason: Optional[str] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None
    notification_error: Optional[str] = None
    batch_id: Optional[str] = None
    batch_index: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    article: Optional[JobArticle] = None

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class JobListResponse(BaseModel):
    """任务列表"""
    jobs: list[JobResponse]
    pagination: Pagination


class ArticleBrief(BaseModel):
    id: int
    title: str
    slug: str
    status: str
    cover_image: Optional[str] = None


class SlotResultResponse(BaseModel):
    job_id: int
    status: str
    article_id: Optional[int] = None
    failure_reason: Optional[str] = None


class GenerateSummaryResponse(BaseModel):
    """批次汇总"""
    requested: int
    completed: int
    failed: int
    skipped: int
    articles: list[ArticleBrief] = []
    results: list[SlotResultResponse] = []


class ProgressResponse(BaseModel):
    """生成进度"""
    configured: bool
    message: Optional[str] = None
    is_active: Optional[bool] = None
    total_needed: Optional[int] = None
    generated: Optional[int] = None
    remaining: Optional[int] = None
    progress_percentage: Optional[int] = None
    estimated_days_remaining: Optional[int] = None
    articles_per_day: Optional[int] = None
    unused_titles: Optional[int] = None
    pending_jobs: Optional[int] = None
    completed_today: Optional[int] = None
    failed_today: Optional[int] = None
    last_generated_at: Optional[datetime] = None


class ParsedSeo(BaseModel):
    title: str = ""
    description: str = ""
    keywords: list[str] = []


class ParsedArticleResponse(BaseModel):
    title: str
    excerpt: str
    content: str
    seo: ParsedSeo


class TestArticle(ArticleBrief):
    url: str


class TestPromptResponse(BaseModel):
    """test-prompt 结果"""
    prompt: str
    raw_response: str
    model: Optional[str] = None
    parsed: ParsedArticleResponse
    article: TestArticle


class CancelResponse(BaseModel):
    cancelled_count: int


class ResetResponse(BaseModel):
    cancelled_count: int
    titles_reset: bool


class MessageResponse(BaseModel):
    success: bool = True
    message: str
