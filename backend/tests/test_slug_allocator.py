"""
Tests for locale-aware slug allocation.
"""

import random
import re

from app.core.slug_allocator import SlugAllocator, slugify, to_base36


def _fixed_clock(value: int):
    return lambda: value


class TestSlugify:
    """Test the slug candidate before the uniqueness suffix."""

    def test_english(self):
        assert slugify("Hello, World! 2026 Guide", "en") == "hello-world-2026-guide"

    def test_english_accents_folded(self):
        assert slugify("Café Crème", "en") == "cafe-creme"

    def test_english_transliterates_letters_without_decomposition(self):
        assert slugify("Straße", "en") == "strasse"
        assert slugify("Straße Ærø Œuvre", "en") == "strasse-aero-oeuvre"

    def test_arabic_keeps_arabic_letters(self):
        assert slugify("مقال عن الذكاء الاصطناعي!", "ar") == "مقال-عن-الذكاء-الاصطناعي"

    def test_arabic_keeps_latin_and_digits(self):
        assert slugify("دليل SEO لعام 2026", "ar") == "دليل-seo-لعام-2026"

    def test_hyphens_collapsed_and_trimmed(self):
        assert slugify("--a -- b--", "en") == "a-b"
        assert slugify("  - عنوان -  ", "ar") == "عنوان"

    def test_symbols_only(self):
        assert slugify("!!! ???", "en") == ""
        assert slugify("!!!", "ar") == ""


class TestSlugAllocator:
    """Test suffixing and fallbacks."""

    def test_suffix_is_base36_millis(self):
        allocator = SlugAllocator(clock_ms=_fixed_clock(1_700_000_000_000))
        assert allocator.allocate("Hello World", "en") == f"hello-world-{to_base36(1_700_000_000_000)}"

    def test_short_title_falls_back(self):
        allocator = SlugAllocator(clock_ms=_fixed_clock(42), rng=random.Random(1))
        slug = allocator.allocate("AI", "en")
        prefix, millis, suffix = slug.split("-")
        assert prefix == "article"
        assert millis == "42"
        assert len(suffix) == 6
        assert suffix.isalnum() and suffix == suffix.lower()

    def test_empty_arabic_title_falls_back(self):
        allocator = SlugAllocator(clock_ms=_fixed_clock(5), rng=random.Random(1))
        assert allocator.allocate("؟؟", "ar").startswith("article-5-")

    def test_same_title_same_millisecond_still_unique(self):
        allocator = SlugAllocator(clock_ms=_fixed_clock(1000))
        slugs = {allocator.allocate("Same Title", "en") for _ in range(50)}
        assert len(slugs) == 50

    def test_fallback_deterministic_with_seeded_rng(self):
        first = SlugAllocator(clock_ms=_fixed_clock(7), rng=random.Random(99))
        second = SlugAllocator(clock_ms=_fixed_clock(7), rng=random.Random(99))
        assert first.allocate("", "en") == second.allocate("", "en")

    def test_base36(self):
        assert to_base36(0) == "0"
        assert to_base36(35) == "z"
        assert to_base36(36) == "10"

    def test_single_arabic_letter_matches_fallback_pattern(self):
        allocator = SlugAllocator(rng=random.Random(3))
        assert re.fullmatch(r"article-\d+-[a-z0-9]{6}", allocator.allocate("ا", "ar"))

    def test_titles_stripping_to_empty_get_distinct_slugs(self):
        allocator = SlugAllocator(clock_ms=_fixed_clock(9), rng=random.Random(3))
        slugs = [allocator.allocate(title, "ar") for title in ("!!", "؟", "ا", "...")]
        assert len(set(slugs)) == len(slugs)
