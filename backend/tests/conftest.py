"""
Pytest configuration and shared fixtures.

Every test runs against a fresh in-memory SQLite database; external
services (generation provider, image search, WhatsApp) are replaced by fakes.
"""

import json
import os
import random
import tempfile
from datetime import datetime, timedelta

# Point the app at throwaway locations before any app module reads settings
_TMP_DIR = tempfile.mkdtemp(prefix="ai-articles-tests-")
os.environ["DATABASE_PATH"] = os.path.join(_TMP_DIR, "test.db")
os.environ["IMAGES_DIR"] = os.path.join(_TMP_DIR, "images")
os.environ["WA_API_KEY"] = ""
os.environ["WA_INSTANCE"] = ""

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: E402,F401
from app.core.ai_providers.base import BaseAIProvider  # noqa: E402
from app.core.article_pipeline import ArticlePipeline  # noqa: E402
from app.core.article_scheduler import ArticleScheduler  # noqa: E402
from app.core.content_client import ContentGenerationClient  # noqa: E402
from app.core.image_service import ArticleImages  # noqa: E402
from app.core.notification_service import DeliveryResult  # noqa: E402
from app.core.result import StepResult  # noqa: E402
from app.core.slug_allocator import SlugAllocator  # noqa: E402
from app.models.ai_article import AiArticleSettings, ReadyTitle  # noqa: E402
from app.models.base import Base  # noqa: E402

NOW = datetime(2026, 3, 1, 10, 0, 0)


def article_json(title: str, paragraphs: int = 4, keywords=("seo", "content")) -> str:
    """A well-formed provider answer in the requested JSON shape."""
    body = "".join(f"<p>Paragraph {i} about {title}.</p>" for i in range(1, paragraphs + 1))
    return json.dumps(
        {
            "title": title,
            "excerpt": f"Summary of {title}.",
            "content": body,
            "seoTitle": f"{title} | SEO",
            "seoDescription": f"Description of {title}",
            "seoKeywords": list(keywords),
        },
        ensure_ascii=False,
    )


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProvider(BaseAIProvider):
    """Generation provider answering from a script.

    `fail_on` holds 1-based call numbers that raise instead of answering.
    """

    def __init__(self, fail_on=(), error: Exception = None, answer=None):
        super().__init__(api_key="test", base_url="http://fake", model="fake-model")
        self.prompts: list[str] = []
        self.fail_on = set(fail_on)
        self.error = error or RuntimeError("provider exploded")
        self.answer = answer

    @property
    def provider_name(self) -> str:
        return "fake"

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if len(self.prompts) in self.fail_on:
            raise self.error
        if self.answer is not None:
            return self.answer(prompt) if callable(self.answer) else self.answer
        # Echo the requested title back as the article title
        title = prompt.split("TITLE<<", 1)[1].split(">>", 1)[0] if "TITLE<<" in prompt else "Article"
        return article_json(title)


class FakeImageService:
    def __init__(self, images: ArticleImages = None, explode: bool = False):
        self.images = images or ArticleImages()
        self.explode = explode
        self.calls = 0

    async def fetch(self, config, seo_keywords=()):
        self.calls += 1
        if self.explode:
            raise RuntimeError("image search down")
        return StepResult.success(self.images)


class FakeDispatcher:
    def __init__(self, explode: bool = False):
        self.explode = explode
        self.notified: list[tuple] = []
        self.summaries: list[dict] = []

    async def notify(self, article, recipients, locale):
        if self.explode:
            raise RuntimeError("whatsapp down")
        self.notified.append((article.title, tuple(recipients), locale))
        return [DeliveryResult(number=n, success=True) for n in recipients]

    async def send_batch_summary(self, recipients, generated, failed, total, titles=()):
        if self.explode:
            raise RuntimeError("whatsapp down")
        self.summaries.append(
            {"generated": generated, "failed": failed, "total": total, "titles": list(titles)}
        )
        return [DeliveryResult(number=n, success=True) for n in recipients]

    async def test_connection(self, number):
        return DeliveryResult(number=number, success=True)


def counter_clock_ms(start: int = 1_772_000_000_000):
    state = {"now": start}

    def _clock() -> int:
        state["now"] += 1
        return state["now"]

    return _clock


@pytest.fixture
async def engine():
    """In-memory database shared across sessions of one test."""
    _engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield _engine
    await _engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as _session:
        yield _session


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def image_service():
    return FakeImageService()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def slug_allocator():
    return SlugAllocator(clock_ms=counter_clock_ms(), rng=random.Random(7))


@pytest.fixture
def pipeline(provider, image_service, slug_allocator):
    return ArticlePipeline(
        content_client=ContentGenerationClient(provider=provider, timeout=5),
        image_service=image_service,
        slug_allocator=slug_allocator,
        site_name="Souq Blog",
        site_description="Test site",
    )


@pytest.fixture
def scheduler(session_factory, pipeline, dispatcher, clock):
    return ArticleScheduler(
        session_factory=session_factory,
        pipeline=pipeline,
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def seed_settings(session_factory):
    """Factory creating the settings record plus its title pool."""

    async def _seed(titles=("A", "B"), **overrides) -> int:
        values = dict(
            prompt_template="Write about TITLE<<{{title}}>> in {{language}}",
            total_articles_needed=2,
            articles_per_day=2,
            start_date=NOW - timedelta(days=1),
            generation_time="09:00",
            include_images=False,
            include_cover_image=False,
            notify_on_completion=False,
            created_by="admin-1",
        )
        values.update(overrides)
        async with session_factory() as s:
            row = AiArticleSettings(**values)
            row.ready_titles = [
                ReadyTitle(title=title, position=index) for index, title in enumerate(titles)
            ]
            s.add(row)
            await s.commit()
            return row.id

    return _seed
