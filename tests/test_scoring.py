"""
Tests for affinity scoring: the three sub-scores, the weighted index,
postal code profiles and run statistics.
"""

import pytest

from affinity_lab.config.loader import ScoringSettings
from affinity_lab.core.models import GeocodingCoverage, GeoInfo, SegmentDevice, Visit
from affinity_lab.core.scoring import (
    AffinityScorer,
    affinity_index,
    compute_stats,
    concentration_score,
    dominant_group,
    dwell_score,
    frequency_score,
    round_half_up,
)

WEIGHTS = {"concentration": 0.40, "frequency": 0.35, "dwell": 0.25}
ZIP_A = GeoInfo("28001", "Madrid", "Madrid", "Comunidad de Madrid", "ES")
ZIP_B = GeoInfo("28002", "Madrid", "Madrid", "Comunidad de Madrid", "ES")


def geocoded(geo, category, count, devices=1, dwell=30.0):
    return [
        (Visit(f"{geo.postal_code}_{category}_{i % devices}", "2024-06-01", "p", category, dwell, 12), geo)
        for i in range(count)
    ]


class TestSubScores:
    def test_concentration(self):
        """Test that a 4x over-representation scores 80 with a cap of 5."""
        assert concentration_score(0.4, 0.1, 5) == 80

    def test_concentration_is_capped(self):
        assert concentration_score(0.9, 0.1, 5) == 100

    def test_frequency(self):
        assert frequency_score(4, 16) == 50
        assert frequency_score(1, 16) == 0
        assert frequency_score(40, 16) == 100

    def test_dwell(self):
        assert dwell_score(60, 60, 120, 2.0) == 50
        assert dwell_score(300, 60, 120, 2.0) == 100
        assert dwell_score(120, 200, 120, 2.0) == 50

    @pytest.mark.parametrize("call", [
        lambda: concentration_score(0.5, 0.0, 5),
        lambda: frequency_score(0, 16),
        lambda: dwell_score(30, 0, 120, 2.0),
        lambda: dwell_score(30, float("nan"), 120, 2.0),
    ])
    def test_zero_denominators_score_zero(self, call):
        assert call() == 0

    def test_weighted_index(self):
        assert affinity_index(80, 50, 50, WEIGHTS) == 62
        assert affinity_index(100, 100, 100, WEIGHTS) == 100
        assert affinity_index(0, 0, 0, WEIGHTS) == 0

    def test_round_half_up(self):
        assert round_half_up(0.5) == 1
        assert round_half_up(2.5) == 3
        assert round_half_up(2.49) == 2


class TestAffinityScorer:
    """Test scoring of geocoded visits."""

    @pytest.fixture
    def scorer(self):
        return AffinityScorer(ScoringSettings())

    @pytest.fixture
    def visits(self):
        return (
            geocoded(ZIP_A, "restaurant", 40, devices=10)
            + geocoded(ZIP_A, "gym", 60, devices=20)
            + geocoded(ZIP_B, "gym", 300, devices=100)
        )

    def test_concentration_relative_to_national_share(self, scorer, visits):
        result = scorer.score(visits, min_visits=5)
        record = next(r for r in result.records if (r.postal_code, r.category) == ("28001", "restaurant"))

        assert record.visits == 40
        assert record.unique_devices == 10
        assert record.frequency == 4.0
        assert record.total_visits_from_zipcode == 100
        assert record.concentration_score == 80
        assert record.frequency_score == 50
        assert record.dwell_score == 50
        assert record.affinity_index == 62

    def test_category_visits_sum_to_postal_total(self, scorer, visits):
        result = scorer.score(visits, min_visits=5)
        totals = {}
        for r in result.records:
            totals[r.postal_code] = totals.get(r.postal_code, 0) + r.visits
            assert r.total_visits_from_zipcode == {"28001": 100, "28002": 300}[r.postal_code]
        assert totals == {"28001": 100, "28002": 300}

    def test_scores_within_bounds(self, scorer, visits):
        for r in scorer.score(visits, min_visits=1).records:
            for value in (r.concentration_score, r.frequency_score, r.dwell_score, r.affinity_index):
                assert 0 <= value <= 100

    def test_noise_floor(self, scorer, visits):
        """Test that a postal code below the floor is dropped entirely."""
        result = scorer.score(visits, min_visits=101)
        assert {r.postal_code for r in result.records} == {"28002"}
        assert result.visits_scored == 400

    def test_floor_defaults_to_settings(self, visits):
        scorer = AffinityScorer(ScoringSettings(min_visits_per_zipcode=200))
        assert {r.postal_code for r in scorer.score(visits).records} == {"28002"}

    def test_profiles(self, scorer, visits):
        result = scorer.score(visits, min_visits=5)
        profile = next(p for p in result.profiles if p.postal_code == "28001")

        assert profile.total_visits == 100
        assert profile.unique_devices == 30
        assert profile.top_category == "restaurant"
        assert set(profile.affinities) == {"restaurant", "gym"}
        assert profile.city == "Madrid"

    def test_nothing_to_score(self, scorer):
        result = scorer.score([], min_visits=1)
        assert result.records == []
        assert result.profiles == []


class TestDominantGroup:
    def test_highest_average_wins(self):
        assert dominant_group({"gym": 80, "restaurant": 40, "bar": 60}, "other") == "sports"

    def test_fallback_when_all_zero(self):
        assert dominant_group({"gym": 0}, "sports") == "sports"

    def test_unknown_category_uses_other_group(self):
        assert dominant_group({"not_a_category": 50}, "sports") == "other"


class TestComputeStats:
    def test_stats(self):
        scorer = AffinityScorer(ScoringSettings())
        scoring = scorer.score(
            geocoded(ZIP_A, "restaurant", 40, devices=10)
            + geocoded(ZIP_A, "gym", 60, devices=20)
            + geocoded(ZIP_B, "gym", 300, devices=100),
            min_visits=5,
        )
        segment = [SegmentDevice(f"d{i}", 1, 1, 30.0, ["gym"]) for i in range(130)]
        coverage = GeocodingCoverage(matched_devices=130)

        stats = compute_stats(scoring, segment, 1000, coverage, ScoringSettings())

        assert stats.segment_size == 130
        assert stats.segment_percent == 13.0
        assert stats.total_postal_codes == 2
        assert stats.categories_analyzed == 2
        assert stats.total_visits_analyzed == 400
        assert stats.coverage is coverage
        assert [h.category for h in stats.top_hotspots] == ["restaurant"]
        assert stats.top_hotspots[0].category_label == "Restaurants"
        gym = next(c for c in stats.category_breakdown if c.category == "gym")
        assert gym.visits == 360
        assert gym.percent_of_total == 90.0
        assert gym.group == "sports"

    def test_empty_dataset(self):
        stats = compute_stats(AffinityScorer(ScoringSettings()).score([]), [], 0, GeocodingCoverage(), ScoringSettings())
        assert stats.segment_percent == 0.0
        assert stats.avg_affinity_index == 0
        assert stats.top_hotspots == []
