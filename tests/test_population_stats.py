"""
test_population_stats.py — Unit tests for the pure snapshot derivations
(statistics, hotspots, display tokens, heat weights, hourly series).

Run:
    pytest tests/test_population_stats.py -v
"""

import pytest

from conftest import region_doc
from crowdpulse.models.population import HourlyPopulation, PopulationRecord
from crowdpulse.services.population_stats import (
    COLOR_AMBER,
    COLOR_BLUE,
    COLOR_GRAY,
    COLOR_GREEN,
    COLOR_RED,
    DISTRICT_COLOR_SCALES,
    calculate_statistics,
    compute_intensities,
    get_change_description,
    get_change_summary,
    get_district_color,
    get_flame_level,
    get_hotspots,
    get_region_color,
    is_hotspot,
    normalize_hourly,
    rank_hotspots,
    to_feature_collection,
)


def record(region_id: str, current: int = 1000, **kwargs) -> PopulationRecord:
    return PopulationRecord.model_validate(region_doc(region_id, current, **kwargs))


# ── calculate_statistics ─────────────────────────────────────────────────────

class TestCalculateStatistics:

    def test_empty_is_all_zero(self):
        stats = calculate_statistics([])
        assert stats.total_regions == 0
        assert stats.average_population == 0
        assert stats.high_density_areas == 0
        assert stats.critical_areas == 0

    def test_end_to_end_scenario(self):
        """a (100, low) + b (500, critical, +0.6) → avg 300, one critical area, hotspot b."""
        records = [
            record("a", 100, status="low"),
            record("b", 500, status="critical", change_rate=0.6),
        ]
        stats = calculate_statistics(records)
        assert stats.total_regions == 2
        assert stats.average_population == 300
        assert stats.high_density_areas == 0
        assert stats.critical_areas == 1
        assert [r.id for r in get_hotspots(records)] == ["b"]

    def test_average_rounds_to_nearest(self):
        records = [record("a", 100), record("b", 101), record("c", 101)]
        assert calculate_statistics(records).average_population == 101   # 100.67

    def test_average_half_rounds_up(self):
        records = [record("a", 2), record("b", 3)]
        assert calculate_statistics(records).average_population == 3     # 2.5

    def test_counts_high_and_critical_separately(self):
        records = [
            record("a", status="high"),
            record("b", status="high"),
            record("c", status="critical"),
            record("d", status="normal"),
        ]
        stats = calculate_statistics(records)
        assert stats.high_density_areas == 2
        assert stats.critical_areas == 1

    def test_idempotent(self):
        records = [record("a", 120, status="high"), record("b", 80)]
        assert calculate_statistics(records) == calculate_statistics(records)

    def test_does_not_mutate_input(self):
        records = [record("a", 120), record("b", 80)]
        before = [r.model_dump() for r in records]
        calculate_statistics(records)
        assert [r.model_dump() for r in records] == before


# ── Hotspots ─────────────────────────────────────────────────────────────────

class TestHotspots:

    def test_rising_and_high_is_hotspot(self):
        assert is_hotspot(record("a", status="high", change_rate=0.35))

    def test_critical_but_not_rising_is_not_hotspot(self):
        """Both conditions are required: status alone never qualifies."""
        assert not is_hotspot(record("a", status="critical", change_rate=0.2))

    def test_rising_but_normal_is_not_hotspot(self):
        assert not is_hotspot(record("a", status="normal", change_rate=0.9))

    def test_threshold_is_exclusive(self):
        assert not is_hotspot(record("a", status="high", change_rate=0.3))

    def test_custom_threshold(self):
        r = record("a", status="high", change_rate=0.2)
        assert is_hotspot(r, threshold=0.1)
        assert not is_hotspot(r, threshold=0.25)

    def test_get_hotspots_keeps_input_order(self):
        records = [
            record("x", status="high", change_rate=0.4),
            record("y", status="low", change_rate=0.9),
            record("z", status="critical", change_rate=0.8),
        ]
        assert [r.id for r in get_hotspots(records)] == ["x", "z"]

    def test_rank_by_change_rate_then_id(self):
        records = [
            record("c", status="high", change_rate=0.4),
            record("b", status="high", change_rate=0.8),
            record("a", status="high", change_rate=0.4),
        ]
        assert [r.id for r in rank_hotspots(records)] == ["b", "a", "c"]


# ── Display tokens ───────────────────────────────────────────────────────────

class TestRegionColor:

    @pytest.mark.parametrize("status,color", [
        ("low", COLOR_BLUE),
        ("normal", COLOR_GREEN),
        ("high", COLOR_AMBER),
        ("critical", COLOR_RED),
    ])
    def test_status_colors(self, status, color):
        assert get_region_color(record("a", status=status).population) == color

    def test_depends_on_status_only(self):
        one = record("a", 10, status="high", change_rate=-0.9)
        two = record("b", 99999, status="high", change_rate=0.9)
        assert get_region_color(one.population) == get_region_color(two.population)

    def test_unknown_status_is_gray(self):
        class Weird:
            status = "unheard-of"
        assert get_region_color(Weird()) == COLOR_GRAY
        assert get_region_color(None) == COLOR_GRAY


class TestChangeDescription:

    @pytest.mark.parametrize("rate,text", [
        (1.0, "Very busy 🔥🔥"),
        (0.51, "Very busy 🔥🔥"),
        (0.5, "Busier than usual 📈"),
        (0.26, "Busier than usual 📈"),
        (0.25, "Slightly busy ↗️"),
        (0.01, "Slightly busy ↗️"),
        (0.0, "About as usual ➡️"),
        (-0.01, "Slightly quiet ↘️"),
        (-0.24, "Slightly quiet ↘️"),
        (-0.25, "Quieter than usual 📉"),
        (-0.49, "Quieter than usual 📉"),
        (-0.5, "Very quiet 😴"),
        (-1.0, "Very quiet 😴"),
    ])
    def test_bands(self, rate, text):
        assert get_change_description(rate) == text

    def test_zero_is_not_slightly_busy(self):
        assert get_change_description(0) != "Slightly busy ↗️"

    def test_every_value_in_range_has_a_band(self):
        for i in range(-100, 101):
            assert get_change_description(i / 100)

    def test_idempotent(self):
        assert get_change_description(0.3) == get_change_description(0.3)


class TestFlamesAndSummary:

    def test_flame_levels(self):
        assert get_flame_level(0.5) == 1
        assert get_flame_level(0.51) == 2

    def test_increase(self):
        summary = get_change_summary(1120, 1000, 0.12)
        assert summary.text == "+12.0% increase"
        assert summary.trend == "up"
        assert summary.delta == 120

    def test_decrease(self):
        summary = get_change_summary(750, 1000, -0.25)
        assert summary.text == "25.0% decrease"
        assert summary.trend == "down"

    def test_deadband_is_no_change(self):
        assert get_change_summary(1050, 1000, 0.05).text == "No change"
        assert get_change_summary(900, 1000, -0.1).trend == "flat"


# ── Heatmap weights ──────────────────────────────────────────────────────────

class TestIntensities:

    def test_min_max_normalised(self):
        weights = compute_intensities([record("a", 100), record("b", 300), record("c", 500)])
        assert weights == {"a": 0.0, "b": 0.5, "c": 1.0}

    def test_flat_counts_are_zero(self):
        weights = compute_intensities([record("a", 42), record("b", 42)])
        assert weights == {"a": 0.0, "b": 0.0}

    def test_empty(self):
        assert compute_intensities([]) == {}

    def test_feature_collection_uses_lng_lat(self):
        fc = to_feature_collection([record("a", 10, lat=37.1, lng=127.2, status="critical")])
        assert fc["type"] == "FeatureCollection"
        feature = fc["features"][0]
        assert feature["geometry"]["coordinates"] == [127.2, 37.1]
        assert feature["properties"]["color"] == COLOR_RED
        assert feature["properties"]["intensity"] == 0.0

    def test_feature_collection_tile_colors_span_ramp(self):
        steps = DISTRICT_COLOR_SCALES["population"]
        fc = to_feature_collection([record("a", 100), record("b", 300), record("c", 500)])
        colors = {f["properties"]["id"]: f["properties"]["tile_color"] for f in fc["features"]}
        assert colors == {"a": steps[0], "b": steps[2], "c": steps[-1]}

    def test_single_region_tile_color_is_middle_step(self):
        fc = to_feature_collection([record("a", 100)])
        assert fc["features"][0]["properties"]["tile_color"] == DISTRICT_COLOR_SCALES["population"][2]


class TestDistrictColor:

    def test_ends_of_ramp(self):
        steps = DISTRICT_COLOR_SCALES["population"]
        assert get_district_color(0, 0, 100) == steps[0]
        assert get_district_color(100, 0, 100) == steps[-1]

    def test_flat_range_is_middle_step(self):
        assert get_district_color(5, 5, 5, "density") == DISTRICT_COLOR_SCALES["density"][2]

    def test_out_of_range_is_clamped(self):
        steps = DISTRICT_COLOR_SCALES["change"]
        assert get_district_color(-50, 0, 100, "change") == steps[0]
        assert get_district_color(500, 0, 100, "change") == steps[-1]

    def test_unknown_scale_falls_back_to_population(self):
        assert get_district_color(0, 0, 1, "nope") == DISTRICT_COLOR_SCALES["population"][0]


# ── Hourly series ────────────────────────────────────────────────────────────

class TestNormalizeHourly:

    def test_fills_all_24_hours(self):
        profile = normalize_hourly([HourlyPopulation(hour=9, population=800)])
        assert [h.hour for h in profile.hours] == list(range(24))
        assert profile.hours[9].population == 800
        assert profile.hours[10].population == 0

    def test_peak_and_quiet_are_first_extremes(self):
        profile = normalize_hourly([
            HourlyPopulation(hour=h, population=100 if h in (7, 19) else 50) for h in range(24)
        ])
        assert profile.peak_hour == 7
        assert profile.quiet_hour == 0

    def test_empty_series(self):
        profile = normalize_hourly(None)
        assert len(profile.hours) == 24
        assert profile.peak_hour == 0
        assert profile.quiet_hour == 0
