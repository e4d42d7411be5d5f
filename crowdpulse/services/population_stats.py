"""
population_stats.py — Pure derivations over a population snapshot.

Everything in this module is a deterministic function of its arguments:
no I/O, no module state, no mutation of the records passed in. The query
layer calls these on every new snapshot; the routes call them again to
decorate responses. Calling them twice on the same input always yields the
same output.

USAGE
─────
    from crowdpulse.services.population_stats import (
        calculate_statistics, get_hotspots, get_region_color, get_change_description,
    )

    stats    = calculate_statistics(snapshot.records)
    hotspots = get_hotspots(snapshot.records)            # threshold 0.3
    color    = get_region_color(record.population)       # "#EF4444" for critical
    text     = get_change_description(record.population.change_rate)

TESTING
────────
    pytest tests/test_population_stats.py -v
"""

from __future__ import annotations

import math
from typing import Iterable, Optional, Sequence

from crowdpulse.models.population import (
    AggregateStatistics,
    ChangeSummary,
    HourlyPopulation,
    HourlyProfile,
    PopulationRecord,
)

# ── Colour tokens (heatmap markers) ───────────────────────────────────────────

COLOR_BLUE  = "#3B82F6"
COLOR_GREEN = "#10B981"
COLOR_AMBER = "#F59E0B"
COLOR_RED   = "#EF4444"
COLOR_GRAY  = "#6B7280"

_STATUS_COLORS = {
    "low":      COLOR_BLUE,
    "normal":   COLOR_GREEN,
    "high":     COLOR_AMBER,
    "critical": COLOR_RED,
}

_HOTSPOT_STATUSES = ("high", "critical")

DEFAULT_HOTSPOT_THRESHOLD = 0.3

# ── Change-rate bands (first match wins) ──────────────────────────────────────

_CHANGE_BANDS = [
    (0.5,   "Very busy 🔥🔥"),
    (0.25,  "Busier than usual 📈"),
    (0.0,   "Slightly busy ↗️"),
]
_NO_CHANGE = "About as usual ➡️"
_QUIET_BANDS = [
    (-0.25, "Slightly quiet ↘️"),
    (-0.5,  "Quieter than usual 📉"),
]
_VERY_QUIET = "Very quiet 😴"

# ── Pictogram colour ramps (five steps, low → high) ───────────────────────────

DISTRICT_COLOR_SCALES: dict[str, list[str]] = {
    "population": ["#3B82F6", "#06B6D4", "#10B981", "#F59E0B", "#EF4444"],
    "density":    ["#E0E7FF", "#C7D2FE", "#A5B4FC", "#818CF8", "#6366F1"],
    "change":     ["#DBEAFE", "#BFDBFE", "#93C5FD", "#60A5FA", "#3B82F6"],
}

_CHANGE_SUMMARY_DEADBAND = 0.1
_DOUBLE_FLAME_RATE = 0.5


def _round_half_up(value: float) -> int:
    """Round-to-nearest with halves going up (2.5 → 3), unlike round()."""
    return int(math.floor(value + 0.5))


# ── Aggregates ────────────────────────────────────────────────────────────────

def calculate_statistics(records: Sequence[PopulationRecord]) -> AggregateStatistics:
    """
    Summarise a snapshot (or a filtered view of one).

    Empty input → all-zero statistics. The average is computed in floating
    point and then rounded to the nearest integer.
    """
    if not records:
        return AggregateStatistics()

    total = sum(r.population.current for r in records)
    return AggregateStatistics(
        total_regions=len(records),
        average_population=_round_half_up(total / len(records)),
        high_density_areas=sum(1 for r in records if r.population.status == "high"),
        critical_areas=sum(1 for r in records if r.population.status == "critical"),
    )


def is_hotspot(record: PopulationRecord, threshold: float = DEFAULT_HOTSPOT_THRESHOLD) -> bool:
    """
    A region is a hotspot when it is rising faster than `threshold` AND is
    already busy. Both conditions are required — a critical region that is
    not rising (change_rate <= threshold) is not a hotspot.
    """
    population = record.population
    rising = population.change_rate > threshold
    busy = population.status in _HOTSPOT_STATUSES
    return rising and busy


def get_hotspots(
    records: Sequence[PopulationRecord],
    threshold: float = DEFAULT_HOTSPOT_THRESHOLD,
) -> list[PopulationRecord]:
    """Records satisfying is_hotspot(), in input order."""
    return [r for r in records if is_hotspot(r, threshold)]


def rank_hotspots(hotspots: Iterable[PopulationRecord]) -> list[PopulationRecord]:
    """Order hotspots by change_rate descending, then id for a stable tie-break."""
    return sorted(hotspots, key=lambda r: (-r.population.change_rate, r.id))


# ── Display tokens ────────────────────────────────────────────────────────────

def get_region_color(population) -> str:
    """
    Marker colour for a region. Depends on status alone — two regions with
    the same status always share a colour whatever their counts.
    Unknown or missing status → gray.
    """
    status = getattr(population, "status", None)
    return _STATUS_COLORS.get(status, COLOR_GRAY)


def get_change_description(change_rate: float) -> str:
    """
    Human-readable crowd level for a change rate.

    Bands are checked top-down with exclusive lower bounds:
      > 0.5, > 0.25, > 0, == 0, > -0.25, > -0.5, otherwise.
    Exactly 0 is "About as usual", never "Slightly busy".
    """
    for bound, text in _CHANGE_BANDS:
        if change_rate > bound:
            return text
    if change_rate == 0:
        return _NO_CHANGE
    for bound, text in _QUIET_BANDS:
        if change_rate > bound:
            return text
    return _VERY_QUIET


def get_flame_level(change_rate: float) -> int:
    """Number of flame icons on a hotspot marker."""
    return 2 if change_rate > _DOUBLE_FLAME_RATE else 1


def get_change_summary(current: int, baseline: int, change_rate: float) -> ChangeSummary:
    """Signed percentage text for the detail panel; ±10% counts as no change."""
    percentage = f"{abs(change_rate * 100):.1f}"
    delta = current - baseline
    if change_rate > _CHANGE_SUMMARY_DEADBAND:
        return ChangeSummary(text=f"+{percentage}% increase", trend="up", delta=delta)
    if change_rate < -_CHANGE_SUMMARY_DEADBAND:
        return ChangeSummary(text=f"{percentage}% decrease", trend="down", delta=delta)
    return ChangeSummary(text="No change", trend="flat", delta=delta)


# ── Heatmap weights ───────────────────────────────────────────────────────────

def compute_intensities(records: Sequence[PopulationRecord]) -> dict[str, float]:
    """
    Min-max normalise `current` into a 0–1 heat weight per region id.
    When every region has the same count the range is taken as 1, so all
    weights are 0.
    """
    if not records:
        return {}
    counts = [r.population.current for r in records]
    low = min(counts)
    spread = (max(counts) - low) or 1
    return {r.id: (r.population.current - low) / spread for r in records}


def to_feature_collection(records: Sequence[PopulationRecord]) -> dict:
    """
    GeoJSON FeatureCollection consumed by the map's heatmap source.
    Coordinates are [lng, lat] as GeoJSON requires. tile_color places each
    region on the population ramp relative to the others in the set.
    """
    intensities = compute_intensities(records)
    currents = [r.population.current for r in records]
    low, high = (min(currents), max(currents)) if currents else (0, 0)
    features = []
    for r in records:
        features.append({
            "type": "Feature",
            "geometry": {
                "type": "Point",
                "coordinates": [r.coordinates.lng, r.coordinates.lat],
            },
            "properties": {
                "id":          r.id,
                "name":        r.name,
                "population":  r.population.current,
                "intensity":   intensities[r.id],
                "status":      r.population.status,
                "change_rate": r.population.change_rate,
                "color":       get_region_color(r.population),
                "tile_color":  get_district_color(r.population.current, low, high),
            },
        })
    return {"type": "FeatureCollection", "features": features}


def get_district_color(
    value: float,
    min_value: float,
    max_value: float,
    scale: str = "population",
) -> str:
    """
    Tile colour for the pictogram grid view: a five-step ramp indexed by
    the normalised value. A flat range maps to the middle step.
    """
    steps = DISTRICT_COLOR_SCALES.get(scale, DISTRICT_COLOR_SCALES["population"])
    if max_value == min_value:
        return steps[2]
    normalized = max(0.0, min(1.0, (value - min_value) / (max_value - min_value)))
    return steps[int(math.floor(normalized * (len(steps) - 1)))]


# ── Hourly series ─────────────────────────────────────────────────────────────

def normalize_hourly(hourly: Optional[Sequence[HourlyPopulation]]) -> HourlyProfile:
    """
    Expand a sparse hourly series to all 24 hours (missing hours are zero)
    and locate the first busiest and first quietest hour.
    """
    by_hour: dict[int, HourlyPopulation] = {}
    for entry in hourly or []:
        by_hour.setdefault(entry.hour, entry)

    hours = [by_hour.get(h) or HourlyPopulation(hour=h) for h in range(24)]

    peak = hours[0]
    quiet = hours[0]
    for entry in hours[1:]:
        if entry.population > peak.population:
            peak = entry
        if entry.population < quiet.population:
            quiet = entry

    return HourlyProfile(hours=hours, peak_hour=peak.hour, quiet_hour=quiet.hour)
