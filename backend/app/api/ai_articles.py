"""
AI 文章生成相关 API 路由
设置、标题池、任务查询直接读写数据库；生成、重试、取消、重置交给调度器
"""

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import settings_repository, title_pool
from app.core.article_scheduler import ArticleScheduler, article_scheduler
from app.core.errors import (
    ArticlePipelineError,
    ConfigurationMissing,
    InvalidJobTransition,
    JobNotFound,
    TitleAlreadyClaimed,
)
from app.database.connection import get_db
from app.models.ai_article import AiArticleJob
from app.schemas.ai_article import (
    CancelResponse,
    GenerateNowRequest,
    GenerateSummaryResponse,
    JobListResponse,
    JobResponse,
    MessageResponse,
    Pagination,
    ProgressResponse,
    ReadyTitleResponse,
    ResetRequest,
    ResetResponse,
    SettingsEnvelope,
    SettingsResponse,
    SettingsUpdateRequest,
    TestPromptRequest,
    TestPromptResponse,
    TestWhatsappRequest,
    TitleListResponse,
    TitlesAddRequest,
    TitlesAddResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ai-articles", tags=["AI 文章生成"])


def get_scheduler() -> ArticleScheduler:
    """依赖注入：调度器单例（测试时可覆盖）"""
    return article_scheduler


# ==================== 设置 ====================


@router.get("/settings", response_model=SettingsEnvelope, summary="获取生成设置")
async def get_settings(db: AsyncSession = Depends(get_db)):
    row = await settings_repository.get(db)
    if row is None:
        return SettingsEnvelope(exists=False, settings=None)
    return SettingsEnvelope(exists=True, settings=SettingsResponse.model_validate(row))


@router.post("/settings", response_model=SettingsResponse, summary="创建或更新生成设置")
async def update_settings(
    request: SettingsUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    """只更新请求中提供的字段"""
    try:
        row = await settings_repository.save(db, request.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("文章生成设置已更新")
    return SettingsResponse.model_validate(row)


@router.get("/progress", response_model=ProgressResponse, summary="获取生成进度")
async def get_progress(scheduler: ArticleScheduler = Depends(get_scheduler)):
    return ProgressResponse(**await scheduler.get_progress())


# ==================== 标题池 ====================


@router.get("/titles", response_model=TitleListResponse, summary="获取标题列表")
async def list_titles(
    status: str = Query("all", pattern="^(used|unused|all)$", description="used / unused / all"),
    db: AsyncSession = Depends(get_db),
):
    row = await settings_repository.get(db)
    if row is None:
        return TitleListResponse(titles=[], total=0, used=0, unused=0)
    titles = await title_pool.list_titles(db, row.id, status)
    counts = await title_pool.count_titles(db, row.id)
    return TitleListResponse(
        titles=[ReadyTitleResponse.model_validate(t) for t in titles],
        **counts,
    )


@router.post("/titles", response_model=TitlesAddResponse, summary="批量添加标题")
async def add_titles(
    request: TitlesAddRequest,
    db: AsyncSession = Depends(get_db),
):
    row = await settings_repository.get_or_create(db)
    added = await title_pool.add_titles(db, row.id, request.titles)
    if not added:
        raise HTTPException(status_code=400, detail="Please provide at least one non-empty title")
    counts = await title_pool.count_titles(db, row.id)
    return TitlesAddResponse(
        total_titles=counts["total"],
        unused_titles=counts["unused"],
        added_count=len(added),
    )


@router.delete("/titles/{title_id}", response_model=MessageResponse, summary="删除未使用的标题")
async def remove_title(
    title_id: int,
    db: AsyncSession = Depends(get_db),
):
    row = await settings_repository.get(db)
    if row is None:
        raise HTTPException(status_code=404, detail="Settings not found")
    removed = await title_pool.remove_title(db, row.id, title_id)
    if removed is None:
        raise HTTPException(status_code=404, detail="Title not found")
    if not removed:
        raise HTTPException(
            status_code=400, detail="Cannot remove a title that has already been used"
        )
    return MessageResponse(message="Title removed successfully")


# ==================== 生成 ====================


@router.post("/test-prompt", response_model=TestPromptResponse, summary="用示例标题测试 Prompt")
async def test_prompt(
    request: TestPromptRequest,
    scheduler: ArticleScheduler = Depends(get_scheduler),
):
    overrides = request.settings.model_dump(exclude_none=True) if request.settings else {}
    if request.prompt_template:
        overrides["prompt_template"] = request.prompt_template
    try:
        result = await scheduler.test_prompt(overrides, request.sample_title)
    except ConfigurationMissing as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ArticlePipelineError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result


@router.post("/generate-now", response_model=GenerateSummaryResponse, summary="立即生成")
async def generate_now(
    request: GenerateNowRequest,
    scheduler: ArticleScheduler = Depends(get_scheduler),
):
    try:
        return await scheduler.generate_now(request.count)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConfigurationMissing as e:
        raise HTTPException(status_code=404, detail=str(e))


# ==================== 任务 ====================


@router.get("/jobs", response_model=JobListResponse, summary="获取任务列表")
async def list_jobs(
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页数量"),
    status: Optional[str] = Query(None, description="按状态筛选"),
    db: AsyncSession = Depends(get_db),
):
    query = select(AiArticleJob)
    count_query = select(func.count(AiArticleJob.id))
    if status:
        query = query.where(AiArticleJob.status == status)
        count_query = count_query.where(AiArticleJob.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(AiArticleJob.created_at.desc(), AiArticleJob.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    jobs = result.scalars().all()
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        pagination=Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit)
        ),
    )


@router.post("/jobs/{job_id}/retry", response_model=MessageResponse, summary="重试失败任务")
async def retry_job(
    job_id: int,
    scheduler: ArticleScheduler = Depends(get_scheduler),
):
    try:
        accepted = await scheduler.retry_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobTransition:
        raise HTTPException(status_code=400, detail="Only failed jobs can be retried")
    except TitleAlreadyClaimed:
        raise HTTPException(status_code=409, detail="Title already used or claimed by another job")
    if not accepted:
        raise HTTPException(status_code=400, detail="Maximum retry attempts reached")
    return MessageResponse(message="Job scheduled for retry")


@router.post("/cancel-pending", response_model=CancelResponse, summary="取消全部待执行任务")
async def cancel_pending(scheduler: ArticleScheduler = Depends(get_scheduler)):
    return await scheduler.cancel_pending_jobs()


@router.post("/reset", response_model=ResetResponse, summary="重置生成进度")
async def reset_progress(
    request: ResetRequest,
    scheduler: ArticleScheduler = Depends(get_scheduler),
):
    try:
        return await scheduler.reset_progress(request.reset_titles)
    except ConfigurationMissing:
        raise HTTPException(status_code=404, detail="Settings not found")


@router.post("/test-whatsapp", response_model=MessageResponse, summary="测试 WhatsApp 连接")
async def test_whatsapp(
    request: TestWhatsappRequest,
    scheduler: ArticleScheduler = Depends(get_scheduler),
):
    result = await scheduler.dispatcher.test_connection(request.number)
    if not result.success:
        raise HTTPException(status_code=500, detail=f"WhatsApp test failed: {result.error}")
    return MessageResponse(message="Test message sent successfully")
