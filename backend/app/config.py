"""
应用配置管理
使用 pydantic-settings 从环境变量和 .env 文件加载配置
"""

import os
from typing import Optional
from pydantic_settings import BaseSettings

_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class Settings(BaseSettings):
    """全局配置（部署级），与数据库中的文章生成设置记录相互独立"""

    # ========== 基础配置 ==========
    APP_NAME: str = "AI 文章生成与调度服务"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    HOST: str = "0.0.0.0"
    PORT: int = 18900

    # ========== 数据库配置 ==========
    DATABASE_PATH: str = os.path.join(_BACKEND_DIR, "data", "ai_articles.db")

    @property
    def DATABASE_URL(self) -> str:
        """异步 SQLite 连接字符串"""
        return f"sqlite+aiosqlite:///{self.DATABASE_PATH}"

    # ========== AI 提供商配置 ==========
    # 文章生成使用的提供商：gemini / openai / deepseek
    AI_PROVIDER: str = "gemini"

    # Google Gemini（OpenAI 兼容端点）
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # OpenAI
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4o-mini"

    # DeepSeek
    DEEPSEEK_API_KEY: Optional[str] = None
    DEEPSEEK_BASE_URL: str = "https://api.deepseek.com/v1"
    DEEPSEEK_MODEL: str = "deepseek-chat"

    # 单次生成调用的超时（秒），超时记为 GenerationTimeout，不在内部重试
    GENERATION_TIMEOUT_SECONDS: float = 120.0

    # ========== 图片服务配置 ==========
    UNSPLASH_ACCESS_KEY: Optional[str] = None
    PEXELS_API_KEY: Optional[str] = None
    IMAGES_DIR: str = os.path.join(_BACKEND_DIR, "images")

    # ========== WhatsApp 通知（Evolution API） ==========
    WA_SERVER_URL: str = "https://wa.genoun.com"
    WA_API_KEY: Optional[str] = None
    WA_INSTANCE: Optional[str] = None
    # 本地号码（0 开头）补全的默认国家码
    WA_DEFAULT_COUNTRY_CODE: str = "966"

    # ========== 站点信息 ==========
    SITE_NAME: str = "AI Articles"
    SITE_DESCRIPTION: str = ""
    FRONTEND_URL: str = "http://localhost:3000"
    BASE_URL: str = "http://localhost:18900"

    # ========== 生成任务控制 ==========
    JOB_MAX_ATTEMPTS: int = 3  # 单个任务最大尝试次数
    SCHEDULER_TICK_SECONDS: int = 60  # 调度器扫描间隔（秒）
    SCHEDULER_TIMEZONE: str = "Asia/Riyadh"
    # 设置记录未指定创建人时使用的默认作者
    DEFAULT_AUTHOR_ID: str = "system"

    # ========== CORS 配置 ==========
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    model_config = {
        "env_file": os.path.join(_BACKEND_DIR, ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


# 全局配置单例
settings = Settings()
