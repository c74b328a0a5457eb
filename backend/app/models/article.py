"""
文章模型
存储 AI 生成流水线产出的文章，列表/详情/编辑由站点的内容管理模块负责
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import Integer, String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, local_now


class Article(Base):
    """文章表"""
    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    # URL slug，全局唯一
    slug: Mapped[str] = mapped_column(String(600), nullable=False, unique=True, index=True)
    # 摘要（2-3 句）
    excerpt: Mapped[str] = mapped_column(Text, nullable=True, default="")
    # 正文 HTML
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # 语言：ar / en
    language: Mapped[str] = mapped_column(String(2), nullable=False, default="ar")
    # 文章状态：draft=草稿, published=已发布
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    # 标签（= SEO 关键词）
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)
    # SEO 信息 {"title", "description", "keywords"}
    seo: Mapped[dict | None] = mapped_column(JSON, nullable=True, default=dict)
    # 封面图 URL 或站内路径
    cover_image: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True, default=None)
    # 正文配图列表
    content_images: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)
    # 作者
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    # 生成所用模型
    generated_with_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=local_now
    )
    # 首次发布时间，只写一次
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, default=None)
