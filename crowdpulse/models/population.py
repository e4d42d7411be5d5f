"""
population.py — Pydantic models for the live population feed.

Documents in MongoDB are written by the collector in camelCase
(changeRate, lastUpdated, dataQuality, ...). Every model accepts both the
camelCase key and the snake_case field name on input, and always
serialises snake_case, so the API surface is uniform.

Document shape of one `population_data` snapshot:

  {
    "timestamp": ISODate("2026-10-17T09:00:00Z"),
    "dataSource": "seoul-open-data",
    "totalRegions": 25,
    "regions": {
      "gangnam": {
        "id": "gangnam",
        "name": "Gangnam-gu",
        "coordinates": {"lat": 37.4979, "lng": 127.0276},
        "population": {"current": 48210, "baseline": 36100,
                       "changeRate": 0.34, "status": "high", "confidence": 0.91},
        "metadata": {"category": "commercial",
                     "lastUpdated": ISODate(...), "dataQuality": "good"}
      },
      ...
    }
  }

Timestamps are converted to tz-aware UTC datetimes on the way in
(see core/timestamps.py); nothing downstream sees a backend timestamp type.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from crowdpulse.core.timestamps import to_utc_datetime

PopulationStatus = Literal["low", "normal", "high", "critical"]
DataQuality = Literal["good", "fair", "poor"]
RegionCategory = Literal["transport_hub", "commercial", "residential", "entertainment", "cultural"]
Weekday = Literal["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def _alias(camel: str, snake: str) -> AliasChoices:
    return AliasChoices(camel, snake)


# ── Live snapshot records ─────────────────────────────────────────────────────

class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PopulationInfo(BaseModel):
    """
    Current crowd level of one region.

    change_rate is the fractional deviation from baseline as reported
    upstream. status is assigned upstream too and is NOT a function of
    change_rate — the two can disagree.
    """

    current: int = Field(..., ge=0)
    baseline: int = Field(..., ge=0)
    change_rate: float = Field(..., ge=-1, le=1, validation_alias=_alias("changeRate", "change_rate"))
    status: PopulationStatus
    confidence: float = Field(..., ge=0, le=1)


class RegionMetadata(BaseModel):
    category: RegionCategory
    last_updated: Optional[datetime] = Field(
        default=None, validation_alias=_alias("lastUpdated", "last_updated")
    )
    data_quality: DataQuality = Field(..., validation_alias=_alias("dataQuality", "data_quality"))

    @field_validator("last_updated", mode="before")
    @classmethod
    def normalise_last_updated(cls, value):
        return to_utc_datetime(value)


class PopulationRecord(BaseModel):
    """One region's state inside a snapshot."""

    id: str = Field(..., min_length=1)
    name: str
    coordinates: Coordinates
    population: PopulationInfo
    metadata: RegionMetadata


class Snapshot(BaseModel):
    """A full set of region records captured at one point in time."""

    records: list[PopulationRecord] = Field(default_factory=list)
    captured_at: Optional[datetime] = None

    @field_validator("captured_at", mode="before")
    @classmethod
    def normalise_captured_at(cls, value):
        return to_utc_datetime(value)


# ── Derived values ────────────────────────────────────────────────────────────

class AggregateStatistics(BaseModel):
    total_regions: int = 0
    average_population: int = 0
    high_density_areas: int = 0
    critical_areas: int = 0


class ChangeSummary(BaseModel):
    """Signed change text shown next to a region's current count."""

    text: str          # "+12.0% increase" | "8.5% decrease" | "No change"
    trend: Literal["up", "down", "flat"]
    delta: int         # current - baseline


class HourlyProfile(BaseModel):
    """A 24-entry hourly series plus its busiest and quietest hour."""

    hours: list["HourlyPopulation"]
    peak_hour: int
    quiet_hour: int


# ── Filters ───────────────────────────────────────────────────────────────────

class PopulationFilters(BaseModel):
    """
    Client-side filters applied to every snapshot.

    Every field is optional; a missing filter lets every record through.
    An empty region_ids list means "no allow-list", not "allow nothing".
    """

    region_ids: Optional[list[str]] = None
    min_population: Optional[int] = Field(default=None, ge=0)
    status: Optional[PopulationStatus] = None

    def cache_key(self) -> str:
        """
        Canonical key for the query cache.

        Field order and region id order never change the key, so
        {status, region_ids=[b, a]} and {region_ids=[a, b], status} share
        one cache entry.
        """
        payload = {
            "min_population": self.min_population,
            "region_ids": sorted(set(self.region_ids)) if self.region_ids else None,
            "status": self.status,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))


# ── Region details (on-demand) ────────────────────────────────────────────────

class NearbyPlace(BaseModel):
    name: str
    type: Literal["subway", "bus", "cafe", "restaurant", "shopping", "park"]
    distance: float                 # metres
    coordinates: Coordinates


class BaselineStats(BaseModel):
    average_population: float = Field(..., validation_alias=_alias("averagePopulation", "average_population"))
    peak_hours: list[int] = Field(default_factory=list, validation_alias=_alias("peakHours", "peak_hours"))
    quiet_hours: list[int] = Field(default_factory=list, validation_alias=_alias("quietHours", "quiet_hours"))
    weekday_multiplier: float = Field(1.0, validation_alias=_alias("weekdayMultiplier", "weekday_multiplier"))
    weekend_multiplier: float = Field(1.0, validation_alias=_alias("weekendMultiplier", "weekend_multiplier"))


class HourlyPopulation(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    population: int = Field(0, ge=0)
    change_rate: float = Field(0.0, validation_alias=_alias("changeRate", "change_rate"))
    data_points: int = Field(0, ge=0, validation_alias=_alias("dataPoints", "data_points"))
    confidence: float = Field(0.0, ge=0, le=1)


class WeeklyTrend(BaseModel):
    day: Weekday
    avg_population: float = Field(..., validation_alias=_alias("avgPopulation", "avg_population"))
    peak_hour: int = Field(..., ge=0, le=23, validation_alias=_alias("peakHour", "peak_hour"))
    quiet_hour: int = Field(..., ge=0, le=23, validation_alias=_alias("quietHour", "quiet_hour"))


class RegionPopulation(PopulationInfo):
    hourly_data: list[HourlyPopulation] = Field(
        default_factory=list, max_length=24, validation_alias=_alias("hourlyData", "hourly_data")
    )
    weekly_trend: list[WeeklyTrend] = Field(
        default_factory=list, validation_alias=_alias("weeklyTrend", "weekly_trend")
    )


class RegionDocMetadata(BaseModel):
    created_at: Optional[datetime] = Field(default=None, validation_alias=_alias("createdAt", "created_at"))
    updated_at: Optional[datetime] = Field(default=None, validation_alias=_alias("updatedAt", "updated_at"))
    version: str = ""
    data_source: list[str] = Field(default_factory=list, validation_alias=_alias("dataSource", "data_source"))
    is_active: bool = Field(True, validation_alias=_alias("isActive", "is_active"))
    priority: int = Field(5, ge=1, le=10)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def normalise_times(cls, value):
        return to_utc_datetime(value)


class DailySummary(BaseModel):
    min_population: int = Field(0, validation_alias=_alias("minPopulation", "min_population"))
    max_population: int = Field(0, validation_alias=_alias("maxPopulation", "max_population"))
    average_population: float = Field(0.0, validation_alias=_alias("averagePopulation", "average_population"))
    peak_hour: int = Field(0, validation_alias=_alias("peakHour", "peak_hour"))
    quiet_hour: int = Field(0, validation_alias=_alias("quietHour", "quiet_hour"))
    total_data_points: int = Field(0, validation_alias=_alias("totalDataPoints", "total_data_points"))
    average_change_rate: float = Field(0.0, validation_alias=_alias("averageChangeRate", "average_change_rate"))


class HistoricalDay(BaseModel):
    """One day of stored history for a region (historical_data collection)."""

    region_id: str = Field(..., validation_alias=_alias("regionId", "region_id"))
    date: str                       # YYYY-MM-DD
    hourly_data: list[HourlyPopulation] = Field(
        default_factory=list, validation_alias=_alias("hourlyData", "hourly_data")
    )
    daily_summary: Optional[DailySummary] = Field(
        default=None, validation_alias=_alias("dailySummary", "daily_summary")
    )


class RegionDetails(BaseModel):
    """Extended region document fetched on demand when a region is selected."""

    id: str
    name: str
    name_eng: str = Field("", validation_alias=_alias("nameEng", "name_eng"))
    description: str = ""
    coordinates: Coordinates
    category: RegionCategory
    subcategory: Optional[str] = None
    baseline_stats: Optional[BaselineStats] = Field(
        default=None, validation_alias=_alias("baselineStats", "baseline_stats")
    )
    nearby_places: list[NearbyPlace] = Field(
        default_factory=list, validation_alias=_alias("nearbyPlaces", "nearby_places")
    )
    metadata: RegionDocMetadata = Field(default_factory=RegionDocMetadata)
    population: RegionPopulation
    hotspots: list[NearbyPlace] = Field(default_factory=list)
    history: list[HistoricalDay] = Field(default_factory=list)


class RegionLookup(BaseModel):
    """Typed result of a region detail lookup — not-found is a value, not an error."""

    status: Literal["found", "not_found"]
    region_id: str
    region: Optional[RegionDetails] = None

    @property
    def found(self) -> bool:
        return self.status == "found"


# ── API responses ─────────────────────────────────────────────────────────────

class RegionView(BaseModel):
    """A snapshot record enriched with its display tokens."""

    record: PopulationRecord
    color: str
    description: str
    intensity: float
    is_hotspot: bool
    flame_level: int = 0


class PopulationResponse(BaseModel):
    """Response body for GET /api/v1/population."""

    regions: list[RegionView]
    statistics: AggregateStatistics
    hotspots: list[str]               # region ids, ranked by change_rate desc
    last_updated: Optional[datetime] = None
    is_loading: bool = False
    error: Optional[str] = None


class RegionDetailsResponse(BaseModel):
    """Response body for GET /api/v1/population/regions/{region_id}."""

    region: RegionDetails
    live: Optional[RegionView] = None     # the region's record in the latest snapshot
    hourly: HourlyProfile
    change: ChangeSummary
    color: str
    description: str


class StreamFrame(BaseModel):
    """Single frame pushed over the population WebSocket stream."""

    type: Literal["snapshot", "error"]
    timestamp: str                    # ISO-8601, receipt time
    statistics: Optional[AggregateStatistics] = None
    hotspots: list[str] = Field(default_factory=list)
    total_regions: int = 0
    message: Optional[str] = None


HourlyProfile.model_rebuild()
