"""
FastAPI 应用主入口
日志配置、生命周期（建表 / 启停文章调度器）、路由与本地图片目录挂载
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.router import api_router
from app.config import settings
from app.core.article_scheduler import article_scheduler
from app.database.connection import close_db, get_db, init_db

# ========== 日志配置 ==========
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# 调度器每分钟扫描一次，这些库的 INFO 日志没有排查价值
for _noisy in (
    "aiosqlite",
    "sqlalchemy.engine",
    "apscheduler.scheduler",
    "apscheduler.executors.default",
    "httpx",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)


def _provider_keys() -> dict[str, bool]:
    return {
        "gemini": bool(settings.GEMINI_API_KEY),
        "openai": bool(settings.OPENAI_API_KEY),
        "deepseek": bool(settings.DEEPSEEK_API_KEY),
    }


# ========== 生命周期管理 ==========
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    启动：建表（必须成功）→ 启动文章调度器（失败只影响自动生成）
    关闭：停调度器 → 释放数据库连接，两步互不影响
    """
    logger.info(f"正在启动 {settings.APP_NAME} v{settings.APP_VERSION}...")
    os.makedirs(os.path.dirname(settings.DATABASE_PATH), exist_ok=True)

    await init_db()
    logger.info(f"数据库就绪: {settings.DATABASE_PATH}")

    if not _provider_keys().get(settings.AI_PROVIDER):
        logger.warning(f"当前 AI_PROVIDER={settings.AI_PROVIDER} 未配置 API Key，生成任务将失败")

    try:
        article_scheduler.start()
    except Exception as e:
        logger.error(f"文章调度器启动失败（仅手动生成可用）: {e}")

    logger.info(f"服务已启动: http://{settings.HOST}:{settings.PORT}/docs")

    yield

    logger.info("正在关闭服务...")
    try:
        article_scheduler.shutdown()
    except Exception as e:
        logger.error(f"关闭文章调度器失败: {e}")

    try:
        await close_db()
    except Exception as e:
        logger.error(f"关闭数据库连接失败: {e}")
    logger.info("服务已关闭")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="AI 文章生成与调度 - 标题池、每日配额、WhatsApp 通知",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)

# 配图下载目录，文章里的 /api/images/... 路径由这里提供
os.makedirs(settings.IMAGES_DIR, exist_ok=True)
app.mount("/api/images", StaticFiles(directory=settings.IMAGES_DIR), name="images")


@app.get("/", tags=["系统"])
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }


@app.get("/health", tags=["系统"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """健康检查：数据库、调度器以及各外部服务的配置状态"""
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"健康检查数据库失败: {e}")
        database = "error"

    providers = _provider_keys()
    return {
        "status": "ok" if database == "ok" else "degraded",
        "subsystems": {
            "database": database,
            "scheduler": "running" if article_scheduler.running else "stopped",
            "ai_provider": settings.AI_PROVIDER if providers.get(settings.AI_PROVIDER) else "unconfigured",
            "image_search": "configured"
            if settings.UNSPLASH_ACCESS_KEY or settings.PEXELS_API_KEY
            else "unconfigured",
            "whatsapp": "configured"
            if settings.WA_API_KEY and settings.WA_INSTANCE
            else "unconfigured",
        },
    }
