"""
SQLAlchemy ORM 基类
所有模型都继承自此 Base
"""

from datetime import datetime

from sqlalchemy.orm import DeclarativeBase


def local_now() -> datetime:
    """返回本地时间（naive），与调度器的生成时间 HH:MM 同一时区口径"""
    return datetime.now()


class Base(DeclarativeBase):
    """声明式基类"""
    pass
