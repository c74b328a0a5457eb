"""
系统日志模型
记录文章生成 / 通知等运行事件，方便运营排查
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import Integer, String, Text, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, local_now


class SystemLog(Base):
    """系统日志表"""
    __tablename__ = "system_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # 事件类型：ai_article_generate / ai_article_notify
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # 日志级别：info / warning / error
    level: Mapped[str] = mapped_column(String(20), nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # 额外详情 JSON（job_id / article_id / 失败原因等）
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=local_now
    )
