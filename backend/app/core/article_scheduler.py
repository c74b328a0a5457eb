"""
文章生成调度器
使用 APScheduler 每分钟扫描一次：
- run_due：到达每日生成时间后，按配额认领标题并逐个生成
- process_pending_jobs：执行被重试放回 pending 的任务
手动生成（generate_now）走同一套单槽位流程。
所有槽位顺序执行，由进程级锁串行化，单个槽位的失败只记录在任务上。
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core import settings_repository, title_pool
from app.core.article_pipeline import ArticlePipeline
from app.core.errors import (
    ConfigurationMissing,
    InvalidJobTransition,
    NoTitlesAvailable,
    TitleAlreadyClaimed,
)
from app.core.generation_config import GenerationConfig, schedule_reached
from app.core.job_ledger import JobLedger
from app.core.notification_service import DeliveryResult, NotificationDispatcher, article_url
from app.core.result import StepResult
from app.database.connection import async_session_factory
from app.models.ai_article import (
    AiArticleJob,
    AiArticleSettings,
    DEFAULT_PROMPT_TEMPLATE,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_COMPLETED,
    JOB_FAILED,
)
from app.models.article import Article
from app.models.base import local_now
from app.models.log import SystemLog

logger = logging.getLogger(__name__)

MIN_MANUAL_COUNT = 1
MAX_MANUAL_COUNT = 10
# 每次扫描最多执行的 pending 任务数
PENDING_BATCH_SIZE = 5
# 认领标题时 CAS 冲突的最大重试次数
MAX_CLAIM_ATTEMPTS = 5
DEFAULT_SAMPLE_TITLE = "عنوان تجريبي للمقال"

EVENT_GENERATE = "ai_article_generate"
EVENT_NOTIFY = "ai_article_notify"


@dataclass
class ArticleSummary:
    """已写库文章的只读摘要，供通知和接口返回使用"""
    id: int
    title: str
    slug: str
    status: str
    cover_image: Optional[str] = None

    @classmethod
    def of(cls, article: Article) -> "ArticleSummary":
        return cls(
            id=article.id,
            title=article.title,
            slug=article.slug,
            status=article.status,
            cover_image=article.cover_image,
        )


@dataclass
class SlotResult:
    """单个槽位的执行结果"""
    job_id: int
    status: str
    article_id: Optional[int] = None
    failure_reason: Optional[str] = None
    article: Optional[ArticleSummary] = None


def _empty_summary(requested: int = 0) -> dict:
    return {
        "requested": requested,
        "completed": 0,
        "failed": 0,
        "skipped": 0,
        "articles": [],
        "results": [],
    }


def _day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class ArticleScheduler:
    """
    文章生成调度器

    Args:
        session_factory: 数据库会话工厂，默认使用全局工厂
        pipeline: 单篇文章流水线
        ledger: 任务台账
        dispatcher: 通知分发器
        clock: 返回当前时间（naive 本地时间）的函数
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        pipeline: Optional[ArticlePipeline] = None,
        ledger: Optional[JobLedger] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE)
        self._running = False
        self._lock = asyncio.Lock()
        self._session_factory = session_factory or async_session_factory
        self._pipeline = pipeline
        self._dispatcher = dispatcher
        self.ledger = ledger or JobLedger()
        self._clock = clock or local_now

    @property
    def running(self) -> bool:
        return self._running

    # 外部依赖延迟创建，避免导入时初始化 AI 提供商
    @property
    def pipeline(self) -> ArticlePipeline:
        if self._pipeline is None:
            self._pipeline = ArticlePipeline()
        return self._pipeline

    @property
    def dispatcher(self) -> NotificationDispatcher:
        if self._dispatcher is None:
            self._dispatcher = NotificationDispatcher()
        return self._dispatcher

    # ==================== 生命周期 ====================

    def start(self):
        """启动调度器"""
        if self._running:
            return

        self.scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=settings.SCHEDULER_TICK_SECONDS),
            id="ai_article_tick",
            name="AI 文章生成调度",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"文章生成调度器已启动（每 {settings.SCHEDULER_TICK_SECONDS} 秒扫描一次）")

    def shutdown(self):
        """关闭调度器"""
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("文章生成调度器已关闭")

    async def _tick(self):
        """定时扫描：已有批次在执行时直接跳过本轮"""
        if self._lock.locked():
            logger.debug("上一轮生成仍在执行，跳过本轮扫描")
            return
        try:
            await self.run_due()
            await self.process_pending_jobs()
        except Exception as e:
            logger.error(f"调度扫描异常: {e}", exc_info=True)

    # ==================== 自动调度 ====================

    async def run_due(self) -> dict:
        """执行今日到期的槽位"""
        async with self._lock:
            now = self._clock()
            async with self._session_factory() as session:
                row = await settings_repository.get(session)
                if row is None or not row.is_active:
                    return _empty_summary()

                if row.remaining_articles <= 0:
                    row.is_active = False
                    row.updated_at = now
                    await session.commit()
                    logger.info("已达到目标文章数，自动停用调度")
                    return _empty_summary()

                if not schedule_reached(row.start_date, row.generation_time, now):
                    return _empty_summary()

                # 今天已创建的任务（任意状态）都计入当日配额
                day_start, day_end = _day_bounds(now)
                existing = (
                    await session.execute(
                        select(func.count(AiArticleJob.id)).where(
                            AiArticleJob.settings_id == row.id,
                            AiArticleJob.scheduled_for >= day_start,
                            AiArticleJob.scheduled_for < day_end,
                        )
                    )
                ).scalar() or 0
                due = min(row.articles_per_day, row.remaining_articles) - existing
                if due <= 0:
                    return _empty_summary()

                settings_id = row.id
                config = settings_repository.snapshot(row)

            batch_id = f"batch-{now:%Y-%m-%d}-{uuid.uuid4().hex[:8]}"
            logger.info(f"开始每日批次 {batch_id}: {due} 篇")
            summary = await self._run_batch(settings_id, config, due, batch_id)
            await self._check_batch_completion()
            return summary

    async def process_pending_jobs(self) -> dict:
        """执行已到时间的 pending 任务（通常是被重试的任务）"""
        async with self._lock:
            now = self._clock()
            async with self._session_factory() as session:
                row = await settings_repository.get(session)
                if row is None:
                    return _empty_summary()
                result = await session.execute(
                    select(AiArticleJob.id)
                    .where(
                        AiArticleJob.status == JOB_PENDING,
                        AiArticleJob.scheduled_for <= now,
                    )
                    .order_by(AiArticleJob.scheduled_for, AiArticleJob.id)
                    .limit(PENDING_BATCH_SIZE)
                )
                job_ids = list(result.scalars().all())
                config = settings_repository.snapshot(row)
                remaining = row.remaining_articles

            summary = _empty_summary(len(job_ids))
            for job_id in job_ids:
                if remaining <= 0:
                    # 配额已满，剩余任务不再执行
                    async with self._session_factory() as session:
                        await self.ledger.cancel(session, job_id, now=self._clock())
                        await session.commit()
                    summary["skipped"] += 1
                    continue
                slot = await self._execute_job(job_id, config)
                self._record(summary, slot)
                if slot.status == JOB_COMPLETED:
                    remaining -= 1

            if job_ids:
                await self._check_batch_completion()
            return summary

    # ==================== 手动触发 ====================

    async def generate_now(self, count: int) -> dict:
        """
        立即生成 count 篇文章（不受启用状态和生成时间限制，仍受剩余配额限制）

        Raises:
            ValueError: count 不在 1..10 之间
            ConfigurationMissing: 尚未创建设置
        """
        if not MIN_MANUAL_COUNT <= count <= MAX_MANUAL_COUNT:
            raise ValueError(
                f"Count must be between {MIN_MANUAL_COUNT} and {MAX_MANUAL_COUNT}"
            )

        async with self._lock:
            async with self._session_factory() as session:
                row = await settings_repository.get_or_raise(session)
                settings_id = row.id
                config = settings_repository.snapshot(row)
                slots = min(count, row.remaining_articles)

            batch_id = f"manual-{uuid.uuid4().hex[:8]}"
            logger.info(f"手动生成 {batch_id}: 请求 {count} 篇，可执行 {slots} 篇")
            summary = await self._run_batch(settings_id, config, slots, batch_id)
            summary["requested"] = count
            summary["skipped"] += count - slots
            return summary

    # ==================== 槽位执行 ====================

    async def _run_batch(
        self, settings_id: int, config: GenerationConfig, count: int, batch_id: str
    ) -> dict:
        """顺序执行 count 个槽位；标题用完时提前结束"""
        summary = _empty_summary(count)
        claimed: set[int] = set()
        for index in range(count):
            try:
                job_id = await self._claim_next(settings_id, batch_id, index, claimed)
            except NoTitlesAvailable:
                summary["skipped"] += count - index
                logger.warning(f"标题池已空，批次 {batch_id} 跳过剩余 {count - index} 个槽位")
                break
            slot = await self._execute_job(job_id, config)
            self._record(summary, slot)

        logger.info(
            f"批次 {batch_id} 完成: 成功 {summary['completed']}, "
            f"失败 {summary['failed']}, 跳过 {summary['skipped']}"
        )
        return summary

    @staticmethod
    def _record(summary: dict, slot: SlotResult) -> None:
        summary["results"].append(
            {
                "job_id": slot.job_id,
                "status": slot.status,
                "article_id": slot.article_id,
                "failure_reason": slot.failure_reason,
            }
        )
        if slot.status == JOB_COMPLETED:
            summary["completed"] += 1
            if slot.article is not None:
                summary["articles"].append(asdict(slot.article))
        elif slot.status == JOB_FAILED:
            summary["failed"] += 1
        else:
            summary["skipped"] += 1

    async def _claim_next(
        self, settings_id: int, batch_id: str, index: int, claimed: set[int]
    ) -> int:
        """
        按 FIFO 认领下一个可用标题并创建 pending 任务
        claimed 记录本批次已认领的标题，认领成功后追加

        Raises:
            NoTitlesAvailable: 没有可认领的标题（或连续认领冲突）
        """
        for _ in range(MAX_CLAIM_ATTEMPTS):
            async with self._session_factory() as session:
                title = await title_pool.next_available(session, settings_id, exclude=claimed)
                if title is None:
                    raise NoTitlesAvailable()
                try:
                    job = await self.ledger.claim(
                        session, title, batch_id=batch_id, batch_index=index, now=self._clock()
                    )
                except TitleAlreadyClaimed as e:
                    await session.rollback()
                    logger.warning(f"{e}，改选下一个标题")
                    continue
                await session.commit()
                claimed.add(title.id)
                return job.id
        raise NoTitlesAvailable("Title claim kept conflicting, giving up")

    async def _execute_job(self, job_id: int, config: GenerationConfig) -> SlotResult:
        """
        执行单个任务。流水线异常转为任务失败；只有存储层异常会向上抛出
        """
        async with self._session_factory() as session:
            try:
                job = await self.ledger.mark_processing(session, job_id, now=self._clock())
            except InvalidJobTransition as e:
                # 认领后被管理员取消
                logger.info(f"任务 #{job_id} 未执行: {e}")
                return SlotResult(job_id=job_id, status=e.current)
            title_text = job.title_used
            settings_id = job.settings_id
            await session.commit()

        logger.info(f"开始生成任务 #{job_id}: {title_text[:50]}")
        try:
            async with self._session_factory() as session:
                outcome = await self.pipeline.run(
                    session, config, title_text, config.author_id, now=self._clock()
                )
                article = outcome.article
                finished = self._clock()
                await self.ledger.mark_completed(
                    session,
                    job_id,
                    article.id,
                    generated_content={
                        "title": article.title,
                        "excerpt": article.excerpt,
                        "content_length": len(article.content or ""),
                        "image_urls": [
                            url
                            for url in [article.cover_image, *(article.content_images or [])]
                            if url
                        ],
                    },
                    now=finished,
                )
                await session.execute(
                    update(AiArticleSettings)
                    .where(AiArticleSettings.id == settings_id)
                    .values(
                        articles_generated=AiArticleSettings.articles_generated + 1,
                        last_generated_at=finished,
                    )
                    .execution_options(synchronize_session=False)
                )
                summary = ArticleSummary.of(article)
                session.add(SystemLog(
                    event_type=EVENT_GENERATE,
                    level="info",
                    message=f"文章生成成功: {summary.title}",
                    details={"job_id": job_id, "article_id": summary.id, "slug": summary.slug},
                ))
                await session.commit()
        except SQLAlchemyError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            async with self._session_factory() as session:
                job = await self.ledger.mark_failed(session, job_id, reason, now=self._clock())
                session.add(SystemLog(
                    event_type=EVENT_GENERATE,
                    level="error",
                    message=f"文章生成失败: {title_text[:80]}",
                    details={
                        "job_id": job_id,
                        "attempts": job.attempts,
                        "error_type": type(e).__name__,
                        "reason": reason,
                    },
                ))
                await session.commit()
            return SlotResult(job_id=job_id, status=JOB_FAILED, failure_reason=reason)

        logger.info(f"任务 #{job_id} 完成: article_id={summary.id}")
        if config.notify_on_completion and config.whatsapp_notification_numbers:
            await self._notify_article(job_id, summary, config)
        return SlotResult(
            job_id=job_id, status=JOB_COMPLETED, article_id=summary.id, article=summary
        )

    # ==================== 通知 ====================

    async def _deliver(self, summary: ArticleSummary, config: GenerationConfig) -> StepResult:
        """发送文章通知；分发器本身出错时返回 failure，不向上抛"""
        try:
            results = await self.dispatcher.notify(
                summary, config.whatsapp_notification_numbers, config.language
            )
        except Exception as e:
            logger.error(f"通知分发异常: {e}")
            return StepResult.failure(str(e))
        return StepResult.success(results)

    async def _notify_article(
        self, job_id: int, summary: ArticleSummary, config: GenerationConfig
    ) -> None:
        """尽力而为的文章通知，结果写回任务"""
        step = await self._deliver(summary, config)
        results: list[DeliveryResult] = step.unwrap_or([])
        sent = any(r.success for r in results)
        errors = [f"{r.number}: {r.error}" for r in results if not r.success]
        if not step.ok:
            errors.append(step.error)

        now = self._clock()
        async with self._session_factory() as session:
            job = await self.ledger.get(session, job_id)
            job.notification_sent = sent
            job.notification_sent_at = now if sent else None
            job.notification_error = "; ".join(errors) or None
            session.add(SystemLog(
                event_type=EVENT_NOTIFY,
                level="info" if sent else "warning",
                message=f"文章通知{'已发送' if sent else '发送失败'}: {summary.title}",
                details={"job_id": job_id, "article_id": summary.id, "errors": errors},
            ))
            await session.commit()

    async def _check_batch_completion(self) -> None:
        """自动批次全部结束后发送一次汇总消息"""
        open_case = case(
            (AiArticleJob.status.in_([JOB_PENDING, JOB_PROCESSING]), 1), else_=0
        )
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(
                        AiArticleJob.batch_id,
                        AiArticleJob.settings_id,
                        func.sum(case((AiArticleJob.status == JOB_COMPLETED, 1), else_=0)),
                        func.sum(case((AiArticleJob.status == JOB_FAILED, 1), else_=0)),
                        func.sum(open_case),
                    )
                    .where(
                        AiArticleJob.batch_id.like("batch-%"),
                        AiArticleJob.summary_sent == False,  # noqa: E712
                    )
                    .group_by(AiArticleJob.batch_id, AiArticleJob.settings_id)
                )
            ).all()

            finished = []
            for batch_id, settings_id, completed, failed, still_open in rows:
                if still_open:
                    continue
                row = await session.get(AiArticleSettings, settings_id)
                titles = (
                    await session.execute(
                        select(Article.title)
                        .join(AiArticleJob, AiArticleJob.article_id == Article.id)
                        .where(
                            AiArticleJob.batch_id == batch_id,
                            AiArticleJob.status == JOB_COMPLETED,
                        )
                        .order_by(AiArticleJob.batch_index)
                    )
                ).scalars().all()
                finished.append((batch_id, row, int(completed or 0), int(failed or 0), list(titles)))

        for batch_id, row, completed, failed, titles in finished:
            results: list[DeliveryResult] = []
            if row is not None and row.notify_on_completion and row.whatsapp_notification_numbers:
                try:
                    results = await self.dispatcher.send_batch_summary(
                        row.whatsapp_notification_numbers,
                        generated=completed,
                        failed=failed,
                        total=row.articles_per_day,
                        titles=titles,
                    )
                except Exception as e:
                    logger.error(f"批次汇总发送异常: {e}")
                    results = [DeliveryResult(number="*", success=False, error=str(e))]

            async with self._session_factory() as session:
                await session.execute(
                    update(AiArticleJob)
                    .where(AiArticleJob.batch_id == batch_id)
                    .values(summary_sent=True)
                    .execution_options(synchronize_session=False)
                )
                if results:
                    sent = any(r.success for r in results)
                    session.add(SystemLog(
                        event_type=EVENT_NOTIFY,
                        level="info" if sent else "warning",
                        message=f"批次汇总{'已发送' if sent else '发送失败'}: {batch_id}",
                        details={
                            "batch_id": batch_id,
                            "generated": completed,
                            "failed": failed,
                            "errors": [f"{r.number}: {r.error}" for r in results if not r.success],
                        },
                    ))
                await session.commit()
            logger.info(f"批次 {batch_id} 汇总已处理: 成功 {completed}, 失败 {failed}")

    # ==================== 管理操作 ====================

    async def get_progress(self) -> dict:
        """生成进度"""
        now = self._clock()
        day_start, _ = _day_bounds(now)
        async with self._session_factory() as session:
            row = await settings_repository.get(session)
            if row is None:
                return {"configured": False, "message": "AI article settings not configured"}

            async def _count(*conditions) -> int:
                result = await session.execute(
                    select(func.count(AiArticleJob.id)).where(
                        AiArticleJob.settings_id == row.id, *conditions
                    )
                )
                return result.scalar() or 0

            pending = await _count(AiArticleJob.status == JOB_PENDING)
            completed_today = await _count(
                AiArticleJob.status == JOB_COMPLETED, AiArticleJob.completed_at >= day_start
            )
            failed_today = await _count(
                AiArticleJob.status == JOB_FAILED, AiArticleJob.completed_at >= day_start
            )

            return {
                "configured": True,
                "is_active": row.is_active,
                "total_needed": row.total_articles_needed,
                "generated": row.articles_generated,
                "remaining": row.remaining_articles,
                "progress_percentage": row.progress_percentage,
                "estimated_days_remaining": row.estimated_days_remaining,
                "articles_per_day": row.articles_per_day,
                "unused_titles": row.unused_titles_count,
                "pending_jobs": pending,
                "completed_today": completed_today,
                "failed_today": failed_today,
                "last_generated_at": row.last_generated_at,
            }

    async def test_prompt(
        self, overrides: Optional[dict] = None, sample_title: Optional[str] = None
    ) -> dict:
        """
        用示例标题跑一次完整流水线：会创建文章，但不消耗标题池、不增加计数

        Raises:
            ConfigurationMissing: 没有设置记录且未提供任何覆盖配置
            GenerationError / MalformedGenerationOutput / DuplicateSlug
        """
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        async with self._session_factory() as session:
            row = await settings_repository.get(session)
            if row is not None:
                config = settings_repository.snapshot(row)
            elif overrides:
                config = GenerationConfig(
                    prompt_template=DEFAULT_PROMPT_TEMPLATE,
                    author_id=settings.DEFAULT_AUTHOR_ID,
                )
            else:
                raise ConfigurationMissing("No settings available for testing")
        config = config.with_overrides(**overrides)
        title = sample_title or DEFAULT_SAMPLE_TITLE

        async with self._session_factory() as session:
            outcome = await self.pipeline.run(
                session, config, title, config.author_id, now=self._clock()
            )
            summary = ArticleSummary.of(outcome.article)
            session.add(SystemLog(
                event_type=EVENT_GENERATE,
                level="info",
                message=f"测试生成文章: {summary.title}",
                details={"article_id": summary.id, "sample_title": title},
            ))
            await session.commit()

        if config.notify_on_completion and config.whatsapp_notification_numbers:
            step = await self._deliver(summary, config)
            if not step.ok:
                logger.warning(f"测试文章通知失败: {step.error}")

        parsed = outcome.draft.parsed
        return {
            "prompt": outcome.draft.prompt,
            "raw_response": outcome.draft.raw.raw_text,
            "model": parsed.model,
            "parsed": {
                "title": parsed.title,
                "excerpt": parsed.excerpt,
                "content": parsed.body,
                "seo": {
                    "title": parsed.seo.get("title", ""),
                    "description": parsed.seo.get("description", ""),
                    "keywords": list(parsed.keywords),
                },
            },
            "article": {**asdict(summary), "url": article_url(summary)},
        }

    async def retry_job(self, job_id: int) -> bool:
        """
        重试失败任务，下一轮扫描时执行

        Raises:
            JobNotFound / InvalidJobTransition
            TitleAlreadyClaimed: 原标题已被后续批次使用或认领
        """
        async with self._session_factory() as session:
            accepted = await self.ledger.retry(session, job_id, now=self._clock())
            await session.commit()
        return accepted

    async def cancel_pending_jobs(self) -> dict:
        """取消全部 pending 任务（不影响正在执行的任务）"""
        async with self._session_factory() as session:
            count = await self.ledger.cancel_all_pending(session, now=self._clock())
            await session.commit()
        return {"cancelled_count": count}

    async def reset_progress(self, reset_titles: bool = False) -> dict:
        """
        重置进度：计数归零、取消 pending 任务，可选把所有标题恢复为未使用

        Raises:
            ConfigurationMissing: 尚未创建设置
        """
        now = self._clock()
        async with self._session_factory() as session:
            row = await settings_repository.get_or_raise(session)
            row.articles_generated = 0
            row.last_generated_at = None
            row.updated_at = now
            cancelled = await self.ledger.cancel_all_pending(session, now=now)
            if reset_titles:
                await title_pool.reset_all(session, row.id)
            await session.commit()
        logger.info(f"生成进度已重置 (取消任务 {cancelled} 个, 重置标题={reset_titles})")
        return {"cancelled_count": cancelled, "titles_reset": reset_titles}


# 全局单例
article_scheduler = ArticleScheduler()
