"""Tests for the composite memory health score."""

import math
import random

import pytest

from engram_memory.models.responses import Overview, TrendPoint, Trends
from engram_memory.utils.health import calculate_health_score, category_diversity, growth_score


def _trends(created: list[int]) -> Trends:
    return Trends(daily=[TrendPoint(date=f"2026-01-{i + 1:02d}", created=c) for i, c in enumerate(created)])


def _overview(**kwargs) -> Overview:
    defaults = {
        "total_memories": 100,
        "by_category": {"fact": 100},
        "total_recalled": 0,
        "accessed_last_30_days": 0,
        "avg_confidence": 0.0,
    }
    defaults.update(kwargs)
    return Overview(**defaults)


class TestCategoryDiversity:
    def test_single_category_is_zero(self):
        assert category_diversity({"fact": 10}) == 0.0

    def test_uniform_over_all_five_is_one(self):
        counts = dict.fromkeys(["preference", "fact", "pattern", "decision", "outcome"], 4)
        assert category_diversity(counts) == pytest.approx(1.0)

    def test_two_equal_categories(self):
        assert category_diversity({"fact": 5, "pattern": 5}) == pytest.approx(1 / math.log2(5))

    def test_zero_counts_ignored(self):
        assert category_diversity({"fact": 5, "pattern": 0}) == 0.0


class TestGrowthScore:
    def test_doubling_week_over_week_saturates(self):
        trends = _trends([1] * 7 + [2] * 7)
        assert growth_score(_overview(), trends) == 1.0

    def test_flat_growth_is_half(self):
        assert growth_score(_overview(), _trends([3] * 14)) == pytest.approx(0.5)

    def test_new_activity_after_idle_week(self):
        assert growth_score(_overview(), _trends([0] * 7 + [1] + [0] * 6)) == 1.0

    def test_idle_fortnight(self):
        assert growth_score(_overview(), _trends([0] * 14)) == pytest.approx(0.3)

    def test_falls_back_to_overview_rates(self):
        overview = _overview(created_last_7_days=7, created_last_30_days=30)
        assert growth_score(overview, _trends([1] * 5)) == pytest.approx(0.5)

    def test_no_recent_creation_in_fallback(self):
        assert growth_score(_overview(), None) == 0.0


class TestCalculateHealthScore:
    def test_empty_store_is_zero(self):
        assert calculate_health_score(Overview(), duplicate_count=0, trends=None) == 0

    def test_perfect_store(self):
        overview = _overview(
            total_recalled=100,
            accessed_last_30_days=100,
            avg_confidence=1.0,
            by_category=dict.fromkeys(["preference", "fact", "pattern", "decision", "outcome"], 20),
        )
        assert calculate_health_score(overview, 0, _trends([1] * 7 + [2] * 7)) == 100

    def test_only_cleanliness_contributes(self):
        # Nothing recalled, zero confidence, one category, no growth: only cleanliness (0.10)
        assert calculate_health_score(_overview(), 0, None) == 10

    def test_heavy_duplication_removes_cleanliness(self):
        assert calculate_health_score(_overview(), 20, None) == 0

    def test_bounds_over_random_inputs(self):
        rng = random.Random(42)
        for _ in range(200):
            total = rng.randint(0, 500)
            overview = Overview(
                total_memories=total,
                by_category={c: rng.randint(0, total) for c in ["preference", "fact", "pattern"]},
                total_recalled=rng.randint(0, total * 2),
                accessed_last_30_days=rng.randint(0, total * 2),
                avg_confidence=rng.random(),
                created_last_7_days=rng.randint(0, 50),
                created_last_30_days=rng.randint(0, 50),
            )
            trends = _trends([rng.randint(0, 10) for _ in range(rng.randint(0, 30))]) if rng.random() < 0.5 else None
            score = calculate_health_score(overview, rng.randint(0, total + 5), trends)
            assert 0 <= score <= 100
            assert isinstance(score, int)
