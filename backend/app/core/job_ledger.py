"""
生成任务台账
状态机本身是作用在不可变快照上的纯函数，JobLedger 负责读取 / 落库。

状态迁移：
    pending → processing → completed | failed
    failed → pending（retry，attempts < max_attempts）
    pending → cancelled
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import InvalidJobTransition, JobNotFound, TitleAlreadyClaimed
from app.models.ai_article import (
    AiArticleJob,
    ReadyTitle,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_CANCELLED,
)
from app.models.base import local_now

logger = logging.getLogger(__name__)


# ===== 纯状态机 =====


@dataclass(frozen=True)
class JobSnapshot:
    job_id: Optional[int]
    status: str
    attempts: int
    max_attempts: int
    article_id: Optional[int] = None
    failure_reason: Optional[str] = None

    @classmethod
    def of(cls, job: AiArticleJob) -> "JobSnapshot":
        return cls(
            job_id=job.id,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            article_id=job.article_id,
            failure_reason=job.failure_reason,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(frozen=True)
class Rejected:
    """重试被拒绝（尝试次数已用完）"""
    reason: str


def _require(job: JobSnapshot, current: str, target: str) -> None:
    if job.status != current:
        raise InvalidJobTransition(job.job_id, job.status, target)


def start(job: JobSnapshot) -> JobSnapshot:
    _require(job, JOB_PENDING, JOB_PROCESSING)
    return replace(job, status=JOB_PROCESSING)


def complete(job: JobSnapshot, article_id: int) -> JobSnapshot:
    _require(job, JOB_PROCESSING, JOB_COMPLETED)
    return replace(job, status=JOB_COMPLETED, article_id=article_id, failure_reason=None)


def fail(job: JobSnapshot, reason: str) -> JobSnapshot:
    _require(job, JOB_PROCESSING, JOB_FAILED)
    return replace(
        job,
        status=JOB_FAILED,
        attempts=job.attempts + 1,
        failure_reason=reason or "Unknown error",
    )


def retry(job: JobSnapshot) -> Union[JobSnapshot, Rejected]:
    """失败任务回到 pending；尝试次数用完时返回 Rejected"""
    _require(job, JOB_FAILED, JOB_PENDING)
    if job.exhausted:
        return Rejected(f"Maximum retry attempts reached ({job.attempts}/{job.max_attempts})")
    return replace(job, status=JOB_PENDING)


def cancel(job: JobSnapshot) -> JobSnapshot:
    _require(job, JOB_PENDING, JOB_CANCELLED)
    return replace(job, status=JOB_CANCELLED)


def _apply(row: AiArticleJob, snapshot: JobSnapshot, now: datetime) -> None:
    row.status = snapshot.status
    row.attempts = snapshot.attempts
    row.article_id = snapshot.article_id
    row.failure_reason = snapshot.failure_reason
    row.updated_at = now


# ===== 持久化 =====


class JobLedger:
    """任务台账：所有方法都在调用方提供的会话中执行，由调用方提交"""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS

    async def get(self, session: AsyncSession, job_id: int) -> AiArticleJob:
        job = await session.get(AiArticleJob, job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def claim(
        self,
        session: AsyncSession,
        title: ReadyTitle,
        batch_id: Optional[str] = None,
        batch_index: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AiArticleJob:
        """
        为标题创建 pending 任务，并以条件更新认领该标题

        Raises:
            TitleAlreadyClaimed: 标题已使用或已被其他任务认领（调用方需回滚会话）
        """
        now = now or local_now()
        job = AiArticleJob(
            settings_id=title.settings_id,
            title_id=title.id,
            title_used=title.title,
            scheduled_for=now,
            status=JOB_PENDING,
            attempts=0,
            max_attempts=self.max_attempts,
            batch_id=batch_id,
            batch_index=batch_index,
            created_at=now,
        )
        session.add(job)
        await session.flush()

        await self._take_title(session, title.id, job.id)

        logger.info(f"任务 #{job.id} 认领标题 #{title.id}: {title.title[:40]}")
        return job

    async def mark_processing(
        self, session: AsyncSession, job_id: int, now: Optional[datetime] = None
    ) -> AiArticleJob:
        now = now or local_now()
        job = await self.get(session, job_id)
        _apply(job, start(JobSnapshot.of(job)), now)
        job.executed_at = now
        job.completed_at = None
        job.execution_time_ms = None
        await session.flush()
        return job

    async def mark_completed(
        self,
        session: AsyncSession,
        job_id: int,
        article_id: int,
        generated_content: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> AiArticleJob:
        """完成任务，并把认领的标题标记为已使用"""
        now = now or local_now()
        job = await self.get(session, job_id)
        _apply(job, complete(JobSnapshot.of(job), article_id), now)
        job.completed_at = now
        job.execution_time_ms = _elapsed_ms(job.executed_at, now)
        job.generated_content = generated_content

        await session.execute(
            update(ReadyTitle)
            .where(ReadyTitle.id == job.title_id)
            .values(used=True, used_at=now, article_id=article_id, claimed_job_id=job.id)
            .execution_options(synchronize_session=False)
        )
        await session.flush()
        return job

    async def mark_failed(
        self,
        session: AsyncSession,
        job_id: int,
        reason: str,
        now: Optional[datetime] = None,
    ) -> AiArticleJob:
        """任务失败，attempts + 1；释放标题认领，标题回到池中供后续批次使用"""
        now = now or local_now()
        job = await self.get(session, job_id)
        _apply(job, fail(JobSnapshot.of(job), reason), now)
        job.completed_at = now
        job.execution_time_ms = _elapsed_ms(job.executed_at, now)

        await self._release_claims(session, [job.id])
        await session.flush()
        logger.warning(
            f"任务 #{job.id} 失败 ({job.attempts}/{job.max_attempts}): {job.failure_reason}"
        )
        return job

    async def retry(
        self, session: AsyncSession, job_id: int, now: Optional[datetime] = None
    ) -> bool:
        """
        重试失败任务，重新认领原标题

        Returns:
            True 已回到 pending；False 尝试次数已用完（状态不变）

        Raises:
            InvalidJobTransition: 任务不是 failed 状态
            TitleAlreadyClaimed: 原标题已被其他任务认领或已使用（调用方需回滚会话）
        """
        now = now or local_now()
        job = await self.get(session, job_id)
        outcome = retry(JobSnapshot.of(job))
        if isinstance(outcome, Rejected):
            logger.info(f"任务 #{job.id} 拒绝重试: {outcome.reason}")
            return False

        await self._take_title(session, job.title_id, job.id)
        _apply(job, outcome, now)
        job.scheduled_for = now
        await session.flush()
        logger.info(f"任务 #{job.id} 已重新排队 (第 {job.attempts + 1} 次尝试)")
        return True

    async def cancel(
        self, session: AsyncSession, job_id: int, now: Optional[datetime] = None
    ) -> AiArticleJob:
        """取消单个 pending 任务并释放标题认领"""
        job = await self.get(session, job_id)
        _apply(job, cancel(JobSnapshot.of(job)), now or local_now())
        await self._release_claims(session, [job.id])
        await session.flush()
        return job

    async def cancel_all_pending(
        self, session: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """把所有 pending 任务置为 cancelled 并释放其标题认领，幂等"""
        now = now or local_now()
        result = await session.execute(
            select(AiArticleJob).where(AiArticleJob.status == JOB_PENDING)
        )
        jobs = list(result.scalars().all())
        for job in jobs:
            _apply(job, cancel(JobSnapshot.of(job)), now)

        await self._release_claims(session, [job.id for job in jobs])
        await session.flush()
        if jobs:
            logger.info(f"已取消 {len(jobs)} 个待执行任务")
        return len(jobs)

    async def _take_title(self, session: AsyncSession, title_id: int, job_id: int) -> None:
        # compare-and-swap：只有未使用且未被认领的标题才能被认领
        result = await session.execute(
            update(ReadyTitle)
            .where(
                ReadyTitle.id == title_id,
                ReadyTitle.used == False,  # noqa: E712
                ReadyTitle.claimed_job_id.is_(None),
            )
            .values(claimed_job_id=job_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TitleAlreadyClaimed(title_id)

    async def _release_claims(self, session: AsyncSession, job_ids: list[int]) -> None:
        if not job_ids:
            return
        await session.execute(
            update(ReadyTitle)
            .where(
                ReadyTitle.claimed_job_id.in_(job_ids),
                ReadyTitle.used == False,  # noqa: E712
            )
            .values(claimed_job_id=None)
            .execution_options(synchronize_session=False)
        )


def _elapsed_ms(started: Optional[datetime], finished: datetime) -> Optional[int]:
    if started is None:
        return None
    return int((finished - started).total_seconds() * 1000)
