"""
API 路由聚合
将所有子路由挂载到统一的 /api 前缀下
"""

from fastapi import APIRouter

from app.api.ai_articles import router as ai_articles_router

# 主路由器，统一 /api 前缀
api_router = APIRouter(prefix="/api")

# 子路由自身已带 prefix，此处不再重复
api_router.include_router(ai_articles_router)
