"""
Tests for the article scheduler: batches, quotas, retries and admin operations.

All external services are fakes from conftest; each test gets its own
in-memory database and a manually advanced clock.
"""

import pytest
from sqlalchemy import select

from app.core.article_pipeline import ArticlePipeline
from app.core.article_scheduler import ArticleScheduler
from app.core.content_client import ContentGenerationClient
from app.core.errors import ConfigurationMissing, InvalidJobTransition, TitleAlreadyClaimed
from app.core.internal_linking import InternalLinker
from app.core.result import StepResult
from app.core.slug_allocator import SlugAllocator
from app.models.ai_article import (
    AiArticleJob,
    AiArticleSettings,
    ReadyTitle,
    JOB_PENDING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_CANCELLED,
)
from app.models.article import Article
from app.models.log import SystemLog

from conftest import NOW, FakeImageService


async def _all(session_factory, model, *order_by):
    async with session_factory() as s:
        result = await s.execute(select(model).order_by(*(order_by or (model.id,))))
        return list(result.scalars().all())


async def _settings(session_factory) -> AiArticleSettings:
    async with session_factory() as s:
        return (await s.execute(select(AiArticleSettings))).scalar_one()


class ConstantSlugs(SlugAllocator):
    """Always hands out the same slug."""

    def allocate(self, title: str, locale: str) -> str:
        return "same-slug"


class FailingLinker(InternalLinker):
    """Internal linking that always reports a failure."""

    async def link(self, session, content, language):
        return StepResult.failure("link index unavailable")


class TestGenerateNow:
    """Test manual generation."""

    async def test_two_titles_two_articles(self, scheduler, seed_settings, session_factory, clock):
        await seed_settings(titles=("A", "B"), total_articles_needed=2, articles_per_day=2)

        summary = await scheduler.generate_now(2)

        assert summary["requested"] == 2
        assert summary["completed"] == 2
        assert summary["failed"] == 0
        assert summary["skipped"] == 0
        assert [a["title"] for a in summary["articles"]] == ["A", "B"]

        articles = await _all(session_factory, Article)
        titles = await _all(session_factory, ReadyTitle, ReadyTitle.position)
        assert len(articles) == 2
        assert all(t.used for t in titles)
        assert {t.article_id for t in titles} == {a.id for a in articles}
        row = await _settings(session_factory)
        assert row.articles_generated == 2
        assert row.last_generated_at == clock()

        jobs = await _all(session_factory, AiArticleJob)
        assert all(j.status == JOB_COMPLETED for j in jobs)
        assert all(j.batch_id.startswith("manual-") for j in jobs)
        assert [j.batch_index for j in jobs] == [0, 1]
        assert jobs[0].generated_content["title"] == "A"

    async def test_empty_pool_skips_instead_of_failing(self, scheduler, seed_settings, session_factory):
        await seed_settings(titles=())

        summary = await scheduler.generate_now(1)

        assert summary["requested"] == 1
        assert summary["completed"] == 0
        assert summary["failed"] == 0
        assert summary["skipped"] == 1
        assert await _all(session_factory, AiArticleJob) == []

    async def test_titles_never_reused(self, scheduler, seed_settings, session_factory):
        await seed_settings(titles=("A", "B"), total_articles_needed=10)

        await scheduler.generate_now(2)
        summary = await scheduler.generate_now(3)

        assert summary["completed"] == 0
        assert summary["skipped"] == 3
        articles = await _all(session_factory, Article)
        assert sorted(a.title for a in articles) == ["A", "B"]

    async def test_capped_by_remaining_quota(self, scheduler, seed_settings, session_factory):
        await seed_settings(titles=("A", "B", "C", "D", "E"), total_articles_needed=3)

        summary = await scheduler.generate_now(5)

        assert summary["requested"] == 5
        assert summary["completed"] == 3
        assert summary["skipped"] == 2
        row = await _settings(session_factory)
        assert row.articles_generated == 3
        assert row.remaining_articles == 0

    async def test_partial_failure_isolated(self, scheduler, seed_settings, provider, session_factory):
        await seed_settings(titles=("A", "B", "C", "D", "E"), total_articles_needed=5)
        provider.fail_on = {3}

        summary = await scheduler.generate_now(5)

        assert summary["completed"] == 4
        assert summary["failed"] == 1
        jobs = await _all(session_factory, AiArticleJob)
        assert [j.status for j in jobs] == [
            JOB_COMPLETED, JOB_COMPLETED, JOB_FAILED, JOB_COMPLETED, JOB_COMPLETED,
        ]
        assert jobs[2].failure_reason
        assert jobs[2].attempts == 1
        assert jobs[2].article_id is None
        row = await _settings(session_factory)
        assert row.articles_generated == 4

        logs = await _all(session_factory, SystemLog)
        assert sum(1 for log in logs if log.level == "error") == 1

        # The failed title is not retried within the batch but stays in the pool
        titles = await _all(session_factory, ReadyTitle, ReadyTitle.position)
        assert [t.title for t in titles if not t.used] == ["C"]
        assert titles[2].claimed_job_id is None

    async def test_failed_title_picked_up_by_next_batch(
        self, scheduler, seed_settings, provider, session_factory
    ):
        await seed_settings(titles=("A",), total_articles_needed=2)
        provider.fail_on = {1}

        first = await scheduler.generate_now(1)
        assert first["failed"] == 1
        assert (await scheduler.get_progress())["unused_titles"] == 1

        second = await scheduler.generate_now(1)

        assert second["completed"] == 1
        assert second["skipped"] == 0
        assert second["articles"][0]["title"] == "A"
        title = (await _all(session_factory, ReadyTitle))[0]
        assert title.used
        jobs = await _all(session_factory, AiArticleJob)
        assert [j.status for j in jobs] == [JOB_FAILED, JOB_COMPLETED]
        assert title.article_id == jobs[1].article_id

    async def test_retry_rejected_after_title_reused(self, scheduler, seed_settings, provider):
        await seed_settings(titles=("A",), total_articles_needed=2)
        provider.fail_on = {1}

        failed_job = (await scheduler.generate_now(1))["results"][0]["job_id"]
        await scheduler.generate_now(1)

        with pytest.raises(TitleAlreadyClaimed):
            await scheduler.retry_job(failed_job)

    @pytest.mark.parametrize("count", [0, 11, -1])
    async def test_count_out_of_range(self, scheduler, seed_settings, count):
        await seed_settings()
        with pytest.raises(ValueError):
            await scheduler.generate_now(count)

    async def test_not_configured(self, scheduler):
        with pytest.raises(ConfigurationMissing):
            await scheduler.generate_now(1)

    async def test_auto_publish(self, scheduler, seed_settings, session_factory, clock):
        await seed_settings(titles=("A",), auto_publish=True)

        await scheduler.generate_now(1)

        article = (await _all(session_factory, Article))[0]
        assert article.status == "published"
        assert article.published_at == clock()
        assert article.created_by == "admin-1"


class TestBestEffortSteps:
    """Test that internal links, images and notifications never fail a slot."""

    async def test_internal_links_to_published_article(
        self, scheduler, seed_settings, session_factory
    ):
        async with session_factory() as s:
            s.add(Article(
                title="Paragraph guide",
                slug="paragraph-guide",
                content="<p>How to write a paragraph</p>",
                language="ar",
                status="published",
                tags=["paragraph"],
                created_by="u",
                published_at=NOW,
            ))
            await s.commit()
        await seed_settings(titles=("A",))

        await scheduler.generate_now(1)

        article = (await _all(session_factory, Article))[-1]
        assert article.title == "A"
        assert article.content.count('class="internal-link"') == 1
        assert "/articles/paragraph-guide" in article.content

    async def test_internal_link_failure_keeps_body(
        self, session_factory, provider, image_service, dispatcher, clock, slug_allocator, seed_settings
    ):
        pipeline = ArticlePipeline(
            content_client=ContentGenerationClient(provider=provider, timeout=5),
            image_service=image_service,
            slug_allocator=slug_allocator,
            linker=FailingLinker(),
        )
        scheduler = ArticleScheduler(
            session_factory=session_factory, pipeline=pipeline, dispatcher=dispatcher, clock=clock
        )
        await seed_settings(titles=("A",))

        summary = await scheduler.generate_now(1)

        assert summary["completed"] == 1
        article = (await _all(session_factory, Article))[0]
        assert "<p>Paragraph 1 about A.</p>" in article.content
        assert "internal-link" not in article.content

    async def test_image_and_notification_failures(
        self, session_factory, provider, dispatcher, clock, slug_allocator, seed_settings
    ):
        dispatcher.explode = True
        pipeline = ArticlePipeline(
            content_client=ContentGenerationClient(provider=provider, timeout=5),
            image_service=FakeImageService(explode=True),
            slug_allocator=slug_allocator,
            site_name="Souq Blog",
            site_description="",
        )
        scheduler = ArticleScheduler(
            session_factory=session_factory, pipeline=pipeline, dispatcher=dispatcher, clock=clock
        )
        await seed_settings(
            titles=("A",),
            include_images=True,
            include_cover_image=True,
            notify_on_completion=True,
            whatsapp_notification_numbers=["0501234567"],
        )

        summary = await scheduler.generate_now(1)

        assert summary["completed"] == 1
        job = (await _all(session_factory, AiArticleJob))[0]
        assert job.status == JOB_COMPLETED
        assert job.notification_sent is False
        assert "whatsapp down" in job.notification_error
        article = (await _all(session_factory, Article))[0]
        assert article.cover_image is None
        assert article.content_images == []

    async def test_notification_recorded(self, scheduler, seed_settings, dispatcher, session_factory, clock):
        await seed_settings(
            titles=("A",),
            notify_on_completion=True,
            whatsapp_notification_numbers=["0501234567"],
        )

        await scheduler.generate_now(1)

        assert dispatcher.notified == [("A", ("0501234567",), "ar")]
        job = (await _all(session_factory, AiArticleJob))[0]
        assert job.notification_sent is True
        assert job.notification_sent_at == clock()
        assert job.notification_error is None
        # Manual batches get no daily summary
        assert dispatcher.summaries == []

    async def test_duplicate_slug_fails_only_that_slot(
        self, session_factory, provider, image_service, dispatcher, clock, seed_settings
    ):
        pipeline = ArticlePipeline(
            content_client=ContentGenerationClient(provider=provider, timeout=5),
            image_service=image_service,
            slug_allocator=ConstantSlugs(),
            site_name="Souq Blog",
            site_description="",
        )
        scheduler = ArticleScheduler(
            session_factory=session_factory, pipeline=pipeline, dispatcher=dispatcher, clock=clock
        )
        await seed_settings(titles=("A", "B"))

        summary = await scheduler.generate_now(2)

        assert summary["completed"] == 1
        assert summary["failed"] == 1
        jobs = await _all(session_factory, AiArticleJob)
        assert "Duplicate slug" in jobs[1].failure_reason
        assert len(await _all(session_factory, Article)) == 1


class TestRunDue:
    """Test the automatic daily schedule."""

    async def test_inactive_does_nothing(self, scheduler, seed_settings, session_factory):
        await seed_settings(is_active=False)
        summary = await scheduler.run_due()
        assert summary["requested"] == 0
        assert await _all(session_factory, AiArticleJob) == []

    async def test_waits_for_generation_time(self, scheduler, seed_settings, session_factory, clock):
        await seed_settings(is_active=True, generation_time="11:30")
        await scheduler.run_due()
        assert await _all(session_factory, AiArticleJob) == []

        clock.advance(hours=2)
        summary = await scheduler.run_due()
        assert summary["completed"] == 2

    async def test_daily_quota_and_auto_deactivation(self, scheduler, seed_settings, session_factory, clock):
        await seed_settings(
            titles=("A", "B", "C", "D"),
            is_active=True,
            total_articles_needed=3,
            articles_per_day=2,
        )

        first = await scheduler.run_due()
        again = await scheduler.run_due()
        assert first["completed"] == 2
        assert again["requested"] == 0

        clock.advance(days=1)
        second = await scheduler.run_due()
        assert second["completed"] == 1

        row = await _settings(session_factory)
        assert row.articles_generated == 3
        assert row.is_active is True

        clock.advance(days=1)
        await scheduler.run_due()
        row = await _settings(session_factory)
        assert row.is_active is False
        assert row.articles_generated == 3
        assert len(await _all(session_factory, Article)) == 3

    async def test_batch_summary_sent_once_per_batch(
        self, scheduler, seed_settings, provider, dispatcher, clock
    ):
        await seed_settings(
            titles=("A", "B", "C", "D", "E", "F"),
            is_active=True,
            total_articles_needed=6,
            articles_per_day=3,
            notify_on_completion=True,
            whatsapp_notification_numbers=["0501"],
        )
        provider.fail_on = {2}

        summary = await scheduler.run_due()
        assert summary["completed"] == 2
        assert summary["failed"] == 1
        assert dispatcher.summaries == [
            {"generated": 2, "failed": 1, "total": 3, "titles": ["A", "C"]}
        ]

        clock.advance(days=1)
        await scheduler.run_due()
        assert len(dispatcher.summaries) == 2
        # B failed yesterday and is back at the front of the pool
        assert dispatcher.summaries[1]["titles"] == ["B", "D", "E"]
        assert len(dispatcher.notified) == 5

    async def test_quota_never_exceeded(self, scheduler, seed_settings, session_factory, clock):
        await seed_settings(
            titles=[f"T{i}" for i in range(10)],
            is_active=True,
            total_articles_needed=4,
            articles_per_day=3,
        )
        for _ in range(5):
            await scheduler.run_due()
            await scheduler.process_pending_jobs()
            row = await _settings(session_factory)
            assert row.articles_generated <= row.total_articles_needed
            clock.advance(days=1)

        row = await _settings(session_factory)
        assert row.articles_generated == 4


class TestRetryAndAdmin:
    """Test retry, cancel and reset."""

    async def test_retry_then_process_pending(self, scheduler, seed_settings, provider, session_factory):
        await seed_settings(titles=("A",))
        provider.fail_on = {1}

        first = await scheduler.generate_now(1)
        job_id = first["results"][0]["job_id"]
        assert first["failed"] == 1

        assert await scheduler.retry_job(job_id) is True
        job = (await _all(session_factory, AiArticleJob))[0]
        assert job.status == JOB_PENDING

        summary = await scheduler.process_pending_jobs()
        assert summary["completed"] == 1
        job = (await _all(session_factory, AiArticleJob))[0]
        assert job.status == JOB_COMPLETED
        assert job.attempts == 1
        title = (await _all(session_factory, ReadyTitle))[0]
        assert title.used
        assert title.article_id == job.article_id

    async def test_retry_refused_when_exhausted(self, scheduler, seed_settings, provider):
        await seed_settings(titles=("A",))
        provider.fail_on = {1, 2, 3}

        job_id = (await scheduler.generate_now(1))["results"][0]["job_id"]
        for _ in range(2):
            assert await scheduler.retry_job(job_id) is True
            await scheduler.process_pending_jobs()

        assert await scheduler.retry_job(job_id) is False

    async def test_retry_completed_job_rejected(self, scheduler, seed_settings):
        await seed_settings(titles=("A",))
        job_id = (await scheduler.generate_now(1))["results"][0]["job_id"]
        with pytest.raises(InvalidJobTransition):
            await scheduler.retry_job(job_id)

    async def test_pending_cancelled_when_quota_full(
        self, scheduler, seed_settings, provider, session_factory
    ):
        await seed_settings(titles=("A", "B"), total_articles_needed=1)
        provider.fail_on = {1}

        failed_job = (await scheduler.generate_now(1))["results"][0]["job_id"]
        assert await scheduler.retry_job(failed_job) is True
        # A is claimed again by the retried job, so this batch takes B
        assert (await scheduler.generate_now(1))["completed"] == 1

        summary = await scheduler.process_pending_jobs()

        assert summary["skipped"] == 1
        jobs = {j.id: j for j in await _all(session_factory, AiArticleJob)}
        assert jobs[failed_job].status == JOB_CANCELLED
        titles = await _all(session_factory, ReadyTitle, ReadyTitle.position)
        assert titles[0].claimed_job_id is None
        assert not titles[0].used
        assert (await _settings(session_factory)).articles_generated == 1

    async def test_cancel_pending_jobs(self, scheduler, seed_settings, session_factory, clock):
        settings_id = await seed_settings(titles=("A", "B"))
        async with session_factory() as s:
            titles = (await s.execute(select(ReadyTitle).order_by(ReadyTitle.position))).scalars().all()
            for title in titles:
                await scheduler.ledger.claim(s, title, now=clock())
            await s.commit()

        assert await scheduler.cancel_pending_jobs() == {"cancelled_count": 2}
        assert await scheduler.cancel_pending_jobs() == {"cancelled_count": 0}
        jobs = await _all(session_factory, AiArticleJob)
        assert all(j.status == JOB_CANCELLED for j in jobs)
        titles = await _all(session_factory, ReadyTitle)
        assert all(t.claimed_job_id is None and t.settings_id == settings_id for t in titles)

    async def test_reset_progress(self, scheduler, seed_settings, session_factory):
        await seed_settings(titles=("A", "B"))
        await scheduler.generate_now(2)

        result = await scheduler.reset_progress(reset_titles=True)

        assert result == {"cancelled_count": 0, "titles_reset": True}
        row = await _settings(session_factory)
        assert row.articles_generated == 0
        assert row.last_generated_at is None
        titles = await _all(session_factory, ReadyTitle)
        assert not any(t.used for t in titles)

    async def test_reset_without_titles_keeps_pool(self, scheduler, seed_settings, session_factory):
        await seed_settings(titles=("A", "B"))
        await scheduler.generate_now(1)

        await scheduler.reset_progress()

        titles = await _all(session_factory, ReadyTitle, ReadyTitle.position)
        assert [t.used for t in titles] == [True, False]

    async def test_reset_not_configured(self, scheduler):
        with pytest.raises(ConfigurationMissing):
            await scheduler.reset_progress()


class TestProgressAndPromptTest:
    """Test read-only progress and the prompt dry run."""

    async def test_progress_not_configured(self, scheduler):
        assert (await scheduler.get_progress())["configured"] is False

    async def test_progress_counts(self, scheduler, seed_settings, provider):
        await seed_settings(titles=("A", "B", "C"), total_articles_needed=4, articles_per_day=2)
        provider.fail_on = {2}
        await scheduler.generate_now(2)

        progress = await scheduler.get_progress()

        assert progress["configured"] is True
        assert progress["generated"] == 1
        assert progress["remaining"] == 3
        assert progress["progress_percentage"] == 25
        assert progress["estimated_days_remaining"] == 2
        assert progress["unused_titles"] == 2
        assert progress["completed_today"] == 1
        assert progress["failed_today"] == 1
        assert progress["pending_jobs"] == 0

    async def test_prompt_test_creates_article_without_consuming_titles(
        self, scheduler, seed_settings, session_factory
    ):
        await seed_settings(titles=("A",))

        result = await scheduler.test_prompt({"language": "en"}, "Sample Title")

        assert "TITLE<<Sample Title>> in English" in result["prompt"]
        assert result["parsed"]["title"] == "Sample Title"
        assert result["parsed"]["seo"]["keywords"] == ["seo", "content"]
        assert result["model"] == "fake-model"
        assert "/dashboard/articles/" in result["article"]["url"]
        assert result["article"]["slug"].startswith("sample-title-")

        row = await _settings(session_factory)
        assert row.articles_generated == 0
        assert row.unused_titles_count == 1
        assert len(await _all(session_factory, Article)) == 1
        assert await _all(session_factory, AiArticleJob) == []

    async def test_prompt_test_without_settings(self, scheduler, session_factory):
        with pytest.raises(ConfigurationMissing):
            await scheduler.test_prompt()

        result = await scheduler.test_prompt({"number_of_paragraphs": 3})
        assert "Total paragraphs: 3" in result["prompt"]
        article = (await _all(session_factory, Article))[0]
        assert article.created_by == "system"
