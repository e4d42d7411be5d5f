#!/usr/bin/env python3
"""
seed_population.py — Populate MongoDB with realistic mock foot-traffic data.

Usage (from the repo root):
    python scripts/seed_population.py               # replace existing seed data
    python scripts/seed_population.py --append      # add a fresh snapshot only
    python scripts/seed_population.py --snapshots 12 --days 7

Prerequisites:
    • MONGO_URI env var set (or .env file present)
    • `pip install -e .` (motor, certifi, python-dotenv come with it)

What this script creates
────────────────────────
  population_data  ← N snapshots, 10 minutes apart, 25 Seoul districts each
  regions          ← one extended document per district (baseline stats,
                     nearby places, hourly + weekly series)
  historical_data  ← one document per district per day
  indexes          ← timestamp desc on population_data, (regionId, date) on
                     historical_data

The API watches population_data with a change stream, so running this
script with --append while the API is up pushes a new snapshot to every
connected dashboard.
"""

import argparse
import asyncio
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

load_dotenv(ROOT / ".env")

import certifi  # noqa: E402
from motor.motor_asyncio import AsyncIOMotorClient  # noqa: E402

from crowdpulse.core.config import settings  # noqa: E402

MONGO_URI = os.environ.get("MONGO_URI", settings.mongo_uri)
MONGO_DB_NAME = os.environ.get("MONGO_DB_NAME", settings.mongo_db_name)

SNAPSHOT_INTERVAL = timedelta(minutes=10)
WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

# ── Districts ─────────────────────────────────────────────────────────────────
# Columns: id, name, english name, lat, lng, category, baseline population
_DISTRICTS = [
    ("gangnam",      "강남구",   "Gangnam-gu",      37.4979, 127.0276, "commercial",    36000),
    ("seocho",       "서초구",   "Seocho-gu",       37.4837, 127.0324, "commercial",    24000),
    ("songpa",       "송파구",   "Songpa-gu",       37.5145, 127.1059, "residential",   27000),
    ("gangdong",     "강동구",   "Gangdong-gu",     37.5301, 127.1238, "residential",   15000),
    ("jongno",       "종로구",   "Jongno-gu",       37.5735, 126.9790, "cultural",      22000),
    ("jung",         "중구",     "Jung-gu",         37.5641, 126.9979, "commercial",    30000),
    ("yongsan",      "용산구",   "Yongsan-gu",      37.5326, 126.9905, "transport_hub", 19000),
    ("mapo",         "마포구",   "Mapo-gu",         37.5663, 126.9019, "entertainment", 23000),
    ("seodaemun",    "서대문구", "Seodaemun-gu",    37.5791, 126.9368, "residential",   14000),
    ("eunpyeong",    "은평구",   "Eunpyeong-gu",    37.6027, 126.9291, "residential",   13000),
    ("seongdong",    "성동구",   "Seongdong-gu",    37.5634, 127.0369, "commercial",    16000),
    ("gwangjin",     "광진구",   "Gwangjin-gu",     37.5385, 127.0823, "entertainment", 17000),
    ("dongdaemun",   "동대문구", "Dongdaemun-gu",   37.5744, 127.0396, "commercial",    18000),
    ("jungnang",     "중랑구",   "Jungnang-gu",     37.6063, 127.0925, "residential",   11000),
    ("seongbuk",     "성북구",   "Seongbuk-gu",     37.5894, 127.0167, "residential",   14000),
    ("gangbuk",      "강북구",   "Gangbuk-gu",      37.6396, 127.0257, "residential",    9000),
    ("dobong",       "도봉구",   "Dobong-gu",       37.6688, 127.0471, "residential",    8000),
    ("nowon",        "노원구",   "Nowon-gu",        37.6542, 127.0568, "residential",   13000),
    ("yangcheon",    "양천구",   "Yangcheon-gu",    37.5170, 126.8665, "residential",   12000),
    ("gangseo",      "강서구",   "Gangseo-gu",      37.5509, 126.8495, "transport_hub", 20000),
    ("guro",         "구로구",   "Guro-gu",         37.4954, 126.8874, "commercial",    16000),
    ("geumcheon",    "금천구",   "Geumcheon-gu",    37.4569, 126.8955, "commercial",    10000),
    ("yeongdeungpo", "영등포구", "Yeongdeungpo-gu", 37.5264, 126.8962, "commercial",    26000),
    ("dongjak",      "동작구",   "Dongjak-gu",      37.5124, 126.9393, "residential",   12000),
    ("gwanak",       "관악구",   "Gwanak-gu",       37.4784, 126.9516, "residential",   15000),
]

_PLACE_TYPES = ["subway", "bus", "cafe", "restaurant", "shopping", "park"]

# Relative crowd level by hour of day (0–23), shared by every district.
_HOURLY_SHAPE = [
    0.25, 0.18, 0.12, 0.10, 0.10, 0.15, 0.35, 0.70, 0.95, 0.85, 0.80, 0.90,
    1.05, 1.00, 0.90, 0.90, 0.95, 1.10, 1.30, 1.25, 1.05, 0.85, 0.60, 0.40,
]


def _status_for(change_rate: float) -> str:
    if change_rate > 0.4:
        return "critical"
    if change_rate > 0.15:
        return "high"
    if change_rate < -0.3:
        return "low"
    return "normal"


def _region_entry(row: tuple, ts: datetime) -> dict:
    """One district inside a population_data snapshot."""
    region_id, name, _name_eng, lat, lng, category, baseline = row
    change_rate = round(max(-0.9, min(0.9, random.gauss(0.05, 0.25))), 3)
    return {
        "id":          region_id,
        "name":        name,
        "coordinates": {"lat": lat, "lng": lng},
        "population": {
            "current":    max(0, int(baseline * (1 + change_rate))),
            "baseline":   baseline,
            "changeRate": change_rate,
            "status":     _status_for(change_rate),
            "confidence": round(random.uniform(0.7, 0.98), 2),
        },
        "metadata": {
            "category":    category,
            "lastUpdated": ts,
            "dataQuality": random.choice(["good", "good", "good", "fair", "poor"]),
        },
    }


def _make_snapshot(ts: datetime) -> dict:
    return {
        "timestamp":    ts,
        "dataSource":   "seed",
        "totalRegions": len(_DISTRICTS),
        "regions":      {row[0]: _region_entry(row, ts) for row in _DISTRICTS},
    }


def _hourly(baseline: int) -> list[dict]:
    hours = []
    for hour, factor in enumerate(_HOURLY_SHAPE):
        population = int(baseline * factor * random.uniform(0.9, 1.1))
        hours.append({
            "hour":       hour,
            "population": population,
            "changeRate": round(population / baseline - 1, 3),
            "dataPoints": 6,
            "confidence": round(random.uniform(0.7, 0.95), 2),
        })
    return hours


def _region_doc(row: tuple, latest: dict, now: datetime) -> dict:
    """Extended regions-collection document for one district."""
    region_id, name, name_eng, lat, lng, category, baseline = row
    hourly = _hourly(baseline)
    by_population = sorted(hourly, key=lambda h: h["population"])
    return {
        "_id":         region_id,
        "name":        name,
        "nameEng":     name_eng,
        "description": f"{name_eng}, Seoul",
        "coordinates": {"lat": lat, "lng": lng},
        "category":    category,
        "baselineStats": {
            "averagePopulation": baseline,
            "peakHours":         sorted(h["hour"] for h in by_population[-3:]),
            "quietHours":        sorted(h["hour"] for h in by_population[:3]),
            "weekdayMultiplier": 1.1 if category in ("commercial", "transport_hub") else 0.95,
            "weekendMultiplier": 1.2 if category in ("entertainment", "cultural") else 0.85,
        },
        "nearbyPlaces": [
            {
                "name":        f"{name_eng} {kind.title()} {i + 1}",
                "type":        kind,
                "distance":    random.randint(50, 800),
                "coordinates": {
                    "lat": round(lat + random.uniform(-0.004, 0.004), 5),
                    "lng": round(lng + random.uniform(-0.004, 0.004), 5),
                },
            }
            for i, kind in enumerate(random.sample(_PLACE_TYPES, 3))
        ],
        "metadata": {
            "createdAt":  now - timedelta(days=30),
            "updatedAt":  now,
            "version":    "1",
            "dataSource": ["seed"],
            "isActive":   True,
            "priority":   random.randint(1, 10),
        },
        "population": {
            **latest["population"],
            "hourlyData":  hourly,
            "weeklyTrend": [
                {
                    "day":           day,
                    "avgPopulation": int(baseline * random.uniform(0.8, 1.2)),
                    "peakHour":      18,
                    "quietHour":     4,
                }
                for day in WEEKDAYS
            ],
        },
    }


def _history_doc(row: tuple, day: datetime) -> dict:
    region_id, _name, _name_eng, _lat, _lng, _category, baseline = row
    hourly = _hourly(baseline)
    populations = [h["population"] for h in hourly]
    return {
        "regionId":   region_id,
        "date":       day.strftime("%Y-%m-%d"),
        "hourlyData": hourly,
        "dailySummary": {
            "minPopulation":     min(populations),
            "maxPopulation":     max(populations),
            "averagePopulation": round(sum(populations) / len(populations), 1),
            "peakHour":          populations.index(max(populations)),
            "quietHour":         populations.index(min(populations)),
            "totalDataPoints":   sum(h["dataPoints"] for h in hourly),
            "averageChangeRate": round(sum(h["changeRate"] for h in hourly) / len(hourly), 3),
        },
    }


async def create_indexes(db) -> None:
    """Idempotent index creation — safe to run multiple times."""
    print("  Creating indexes…")
    # population_data: "latest snapshot" is find().sort(timestamp desc).limit(1)
    await db[settings.population_collection].create_index(
        [("timestamp", -1)],
        name="timestamp_desc",
        background=True,
    )
    await db[settings.history_collection].create_index(
        [("regionId", 1), ("date", -1)],
        name="region_date_desc",
        unique=True,
        background=True,
    )
    print("  Indexes OK")


async def seed(append: bool = False, snapshots: int = 6, days: int = 7) -> None:
    client = AsyncIOMotorClient(MONGO_URI, tlsCAFile=certifi.where(), tz_aware=True)
    db = client[MONGO_DB_NAME]

    try:
        await client.admin.command("ping")
        print(f"Connected to MongoDB ({MONGO_DB_NAME})")
    except Exception as exc:
        print(f"ERROR: Cannot connect to MongoDB: {exc}")
        return

    now = datetime.now(tz=timezone.utc)
    population = db[settings.population_collection]

    # ── population_data ───────────────────────────────────────────────────────
    if append:
        print("\nInserting one fresh snapshot…")
        await population.insert_one(_make_snapshot(now))
        client.close()
        print("✓ Done")
        return

    print("\nClearing existing population snapshots…")
    result = await population.delete_many({})
    print(f"  Deleted {result.deleted_count} existing documents")

    print(f"\nInserting {snapshots} snapshots…")
    docs = [_make_snapshot(now - SNAPSHOT_INTERVAL * i) for i in reversed(range(snapshots))]
    await population.insert_many(docs)
    latest = docs[-1]

    # ── regions ───────────────────────────────────────────────────────────────
    print("\nUpserting region documents…")
    for row in _DISTRICTS:
        doc = _region_doc(row, latest["regions"][row[0]], now)
        await db[settings.regions_collection].replace_one({"_id": doc["_id"]}, doc, upsert=True)
    print(f"  {len(_DISTRICTS)} region documents upserted")

    # ── historical_data ───────────────────────────────────────────────────────
    print(f"\nUpserting {days} days of history…")
    history = db[settings.history_collection]
    for offset in range(1, days + 1):
        day = now - timedelta(days=offset)
        for row in _DISTRICTS:
            doc = _history_doc(row, day)
            await history.replace_one(
                {"regionId": doc["regionId"], "date": doc["date"]}, doc, upsert=True
            )

    # ── Indexes ───────────────────────────────────────────────────────────────
    print("\nEnsuring indexes…")
    await create_indexes(db)

    # ── Verify ────────────────────────────────────────────────────────────────
    print("\n✓ Done")
    print(f"  population_data total : {await population.count_documents({})}")
    print(f"  regions total         : {await db[settings.regions_collection].count_documents({})}")
    print(f"  historical_data total : {await history.count_documents({})}")

    client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed CrowdPulse population data into MongoDB")
    parser.add_argument(
        "--append",
        action="store_true",
        help="Insert one fresh snapshot without touching anything else",
    )
    parser.add_argument("--snapshots", type=int, default=6, help="Snapshots to insert (replace mode)")
    parser.add_argument("--days", type=int, default=7, help="Days of history per district")
    args = parser.parse_args()

    print(f"CrowdPulse Population Seeder  (db: {MONGO_DB_NAME})")
    print(f"Mode: {'append' if args.append else 'replace'}\n")

    asyncio.run(seed(append=args.append, snapshots=args.snapshots, days=args.days))
