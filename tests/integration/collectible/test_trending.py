"""Tests for trending, expiring-soon and low-supply views."""

import pytest

from conftest import NOW, make_template
from src.core.service.collectible.trending import TrendingService

DAY = 86400


@pytest.fixture
def trending():
    return TrendingService(window_hours=24, velocity_ceiling=10, expiring_soon_days=7)


class TestTrendingScores:

    def test_velocity_from_recent_counts(self, trending):
        template = make_template(1)

        assert trending.claim_velocity(template, NOW, recent_claims=120) == pytest.approx(0.5)

    def test_velocity_is_clamped(self, trending):
        assert trending.claim_velocity(make_template(1), NOW, recent_claims=10_000) == 1.0

    def test_velocity_falls_back_to_lifetime_supply(self, trending):
        template = make_template(1, start_time=NOW - 10 * 3600, current_supply=50)

        assert trending.claim_velocity(template, NOW) == pytest.approx(0.5)

    def test_lifetime_velocity_uses_at_least_one_hour(self, trending):
        template = make_template(1, start_time=NOW - 60, current_supply=5)

        assert trending.claim_velocity(template, NOW) == pytest.approx(0.5)

    def test_scarcity(self, trending):
        assert trending.scarcity(make_template(1, max_supply=10, current_supply=9)) == pytest.approx(0.9)
        assert trending.scarcity(make_template(2, max_supply=0, current_supply=9)) == 0.0

    def test_urgency(self, trending):
        assert trending.urgency(make_template(1, end_time=0), NOW) == 0.0
        assert trending.urgency(make_template(2, end_time=NOW - 1), NOW) == 1.0
        assert trending.urgency(make_template(3, end_time=NOW + 7 * DAY), NOW) == 0.0
        assert trending.urgency(make_template(4, end_time=NOW + int(3.5 * DAY)), NOW) == pytest.approx(0.5)

    def test_scores_and_flags(self, trending):
        hot = make_template(1, max_supply=10, current_supply=9, end_time=NOW + DAY)
        quiet = make_template(2, max_supply=0)

        scores = trending.calculate_trending_scores([hot, quiet], claim_counts={1: 240}, now=NOW)

        assert scores[1].is_trending is True
        assert scores[1].is_low_supply is True
        assert scores[1].is_expiring_soon is True
        assert scores[2].score == 0.0
        assert scores[2].is_trending is False
        assert scores[2].is_low_supply is False

    def test_missing_window_count_falls_back_per_template(self, trending):
        started_an_hour_ago = make_template(1, start_time=NOW - 3600, current_supply=9)
        counted = make_template(2, current_supply=40)

        scores = trending.calculate_trending_scores(
            [started_an_hour_ago, counted], claim_counts={2: 24}, now=NOW
        )

        assert scores[1].claim_velocity == pytest.approx(0.9)
        assert scores[2].claim_velocity == pytest.approx(0.1)

    def test_zero_window_count_is_not_a_fallback(self, trending):
        template = make_template(1, start_time=NOW - 3600, current_supply=9)

        scores = trending.calculate_trending_scores([template], claim_counts={1: 0}, now=NOW)

        assert scores[1].claim_velocity == 0.0

    def test_ended_template_is_flagged_expiring(self, trending):
        scores = trending.calculate_trending_scores([make_template(1, end_time=NOW - 60)], now=NOW)

        assert scores[1].urgency == 1.0
        assert scores[1].is_expiring_soon is True

    def test_sold_out_is_not_low_supply(self, trending):
        scores = trending.calculate_trending_scores(
            [make_template(1, max_supply=10, current_supply=10)], claim_counts={}, now=NOW
        )

        assert scores[1].is_low_supply is False


class TestRankedViews:

    def test_trending_orders_by_velocity_then_supply(self, trending):
        templates = [
            make_template(1, current_supply=5),
            make_template(2, current_supply=50),
            make_template(3, current_supply=7),
        ]

        ranked = trending.get_trending_collectibles(templates, claim_counts={1: 48, 2: 0, 3: 48}, now=NOW)

        assert [t.template_id for t in ranked] == [3, 1, 2]

    def test_trending_limit(self, trending):
        templates = [make_template(i, current_supply=i) for i in range(1, 6)]

        ranked = trending.get_trending_collectibles(templates, limit=2, claim_counts={}, now=NOW)

        assert [t.template_id for t in ranked] == [5, 4]

    def test_expiring_soon(self, trending):
        templates = [
            make_template(1, end_time=NOW + 2 * DAY),
            make_template(2, end_time=NOW + DAY),
            make_template(3, end_time=NOW + 30 * DAY),
            make_template(4, end_time=0),
            make_template(5, end_time=NOW - 60),
        ]

        expiring = trending.get_expiring_soon_collectibles(templates, now=NOW)
        still_open = trending.get_expiring_soon_collectibles(templates, now=NOW, include_ended=False)

        assert [t.template_id for t in expiring] == [5, 2, 1]
        assert [t.template_id for t in still_open] == [2, 1]

    def test_low_supply_excludes_sold_out_and_unbounded(self, trending):
        templates = [
            make_template(1, max_supply=10, current_supply=10),
            make_template(2, max_supply=10, current_supply=8),
            make_template(3, max_supply=0, current_supply=1000),
            make_template(4, max_supply=100, current_supply=99),
            make_template(5, max_supply=10, current_supply=3),
        ]

        low = trending.get_low_supply_collectibles(templates)

        assert [t.template_id for t in low] == [4, 2, 5]

    def test_views_are_deterministic(self, trending):
        templates = [make_template(i, current_supply=i % 3, end_time=NOW + i * 3600) for i in range(1, 8)]

        first = trending.get_trending_collectibles(templates, claim_counts={1: 3, 4: 3}, now=NOW)
        second = trending.get_trending_collectibles(templates, claim_counts={1: 3, 4: 3}, now=NOW)

        assert first == second
