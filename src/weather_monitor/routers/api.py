import typing
from datetime import UTC, datetime, timedelta

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from weather_monitor.core.constants import (
    CURRENT_READING_MAX_AGE_SECONDS,
    HISTORY_LIMIT_MAX,
    RECENT_ALERTS_LIMIT_MAX,
    VERSION,
)
from weather_monitor.dependencies import Services, get_services
from weather_monitor.exceptions import InvalidQueryError
from weather_monitor.models import City, Reading, ReadingSource
from weather_monitor.services.cache import CacheKeys

logger = structlog.get_logger("WeatherMonitor.API")
router = APIRouter(prefix="/api/v1")

HISTORY_PERIODS = {
    "6h": timedelta(hours=6),
    "12h": timedelta(hours=12),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

CITY_LIST_TTL = 3600
CURRENT_TTL = 300
HISTORY_TTL = 600
STATISTICS_TTL = 900
RECENT_ALERTS_TTL = 300
ALERT_CONFIGS_TTL = 1800


class AlertTestRequest(BaseModel):
    city_id: int
    email: str | None = None
    webhook_url: str | None = None


def envelope(data: typing.Any, cached: bool = False) -> dict[str, typing.Any]:
    return {
        "success": True,
        "data": data,
        "cached": cached,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _reading_payload(reading: Reading, city: City | None) -> dict[str, typing.Any]:
    data = reading.model_dump(mode="json")
    data["city_name"] = city.name if city else None
    data["region"] = city.region if city else None
    return data


async def _require_city(services: Services, city_id: int) -> City:
    if city_id <= 0:
        raise InvalidQueryError("Invalid city ID")
    city = await services.db.get_city(city_id)
    if city is None:
        raise HTTPException(status_code=404, detail="City not found")
    return city


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> JSONResponse:
    db_ok = await services.db.is_healthy()
    cache_ok = await services.cache.is_healthy()
    data = {
        "status": "healthy" if db_ok else "unhealthy",
        "version": VERSION,
        "database": db_ok,
        "cache": cache_ok,
        "provider": services.provider.usage_stats(),
        "notifications": await services.dispatcher.health_status(),
        "scheduler": bool(services.scheduler and services.scheduler.running),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=envelope(data))


@router.get("/cities")
async def list_cities(services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    cached = await services.cache.get(CacheKeys.CITY_LIST)
    if cached is not None:
        return envelope(cached, cached=True)

    cities = [c.model_dump(mode="json") for c in await services.db.list_active_cities()]
    await services.cache.set(CacheKeys.CITY_LIST, cities, CITY_LIST_TTL)
    return envelope(cities)


@router.get("/cities/{city_id}")
async def get_city(city_id: int, services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    city = await _require_city(services, city_id)
    return envelope(city.model_dump(mode="json"))


@router.get("/readings/current")
async def current_readings(services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    cached = await services.cache.get(CacheKeys.CURRENT_READINGS)
    if cached is not None:
        return envelope(cached, cached=True)

    latest = await services.db.latest_reading_per_city()
    cutoff = datetime.now(UTC) - timedelta(seconds=CURRENT_READING_MAX_AGE_SECONDS)
    if not any(r.captured_at > cutoff for r in latest):
        logger.info("No recent readings, collecting from OpenWeather", stale=bool(latest))
        await services.collector.collect(ReadingSource.LIVE)
        latest = await services.db.latest_reading_per_city()

    cities = {c.id: c for c in await services.db.list_active_cities()}
    data = [_reading_payload(r, cities.get(r.city_id)) for r in latest]
    await services.cache.set(CacheKeys.CURRENT_READINGS, data, CURRENT_TTL)
    return envelope(data)


@router.get("/readings/history/{city_id}")
async def reading_history(
    city_id: int,
    period: str = "24h",
    limit: int = Query(100, ge=1),
    services: Services = Depends(get_services),
) -> dict[str, typing.Any]:
    # Reject bad parameters before touching storage
    if limit > HISTORY_LIMIT_MAX:
        raise InvalidQueryError(f"Limit cannot exceed {HISTORY_LIMIT_MAX} records")
    if period not in HISTORY_PERIODS:
        raise InvalidQueryError(f"Unknown period '{period}', expected one of {', '.join(HISTORY_PERIODS)}")

    city = await _require_city(services, city_id)

    key = CacheKeys.history(city_id, period, limit)
    cached = await services.cache.get(key)
    if cached is not None:
        return envelope(cached, cached=True)

    end = datetime.now(UTC)
    start = end - HISTORY_PERIODS[period]
    history = await services.db.reading_history(city_id, start, end, limit)

    statistics = None
    if history:
        temperatures = [r.temperature for r in history]
        statistics = {
            "count": len(history),
            "avg_temperature": round(sum(temperatures) / len(temperatures), 2),
            "min_temperature": min(temperatures),
            "max_temperature": max(temperatures),
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
        }

    data = {
        "city": {"id": city.id, "name": city.name, "region": city.region},
        "period": period,
        "limit": limit,
        "statistics": statistics,
        "readings": [r.model_dump(mode="json") for r in history],
    }
    await services.cache.set(key, data, HISTORY_TTL)
    return envelope(data)


@router.get("/readings/statistics")
async def statistics(services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    cached = await services.cache.get(CacheKeys.STATISTICS)
    if cached is not None:
        return envelope(cached, cached=True)

    data = (await services.db.aggregate_statistics()).model_dump(mode="json")
    await services.cache.set(CacheKeys.STATISTICS, data, STATISTICS_TTL)
    return envelope(data)


@router.post("/readings/collect-now")
async def collect_now(services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    result = await services.collector.collect_now()
    response = envelope(result.model_dump(mode="json"))
    response["message"] = f"Collection finished: {result.successful} ok, {result.failed} failed"
    return response


@router.get("/alerts/recent")
async def recent_alerts(
    limit: int = Query(50, ge=1), services: Services = Depends(get_services)
) -> dict[str, typing.Any]:
    limit = min(limit, RECENT_ALERTS_LIMIT_MAX)
    key = CacheKeys.recent_alerts(limit)
    cached = await services.cache.get(key)
    if cached is not None:
        return envelope(cached, cached=True)

    events = [e.model_dump(mode="json") for e in await services.db.recent_alert_events(limit)]
    await services.cache.set(key, events, RECENT_ALERTS_TTL)
    return envelope(events)


@router.get("/alerts/configs")
async def alert_configs(services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    cached = await services.cache.get(CacheKeys.ALL_ALERT_CONFIGS)
    if cached is not None:
        return envelope(cached, cached=True)

    cities = {c.id: c for c in await services.db.list_active_cities()}
    grouped: dict[int, dict[str, typing.Any]] = {}
    for config in await services.db.all_alert_configs():
        city = cities.get(config.city_id)
        entry = grouped.setdefault(
            config.city_id,
            {"city_id": config.city_id, "city_name": city.name if city else None, "configs": []},
        )
        entry["configs"].append(config.model_dump(mode="json"))

    data = list(grouped.values())
    await services.cache.set(CacheKeys.ALL_ALERT_CONFIGS, data, ALERT_CONFIGS_TTL)
    return envelope(data)


@router.get("/alerts/configs/city/{city_id}")
async def alert_configs_for_city(city_id: int, services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    await _require_city(services, city_id)
    configs = await services.evaluator.configs_for_city(city_id)
    return envelope([c.model_dump(mode="json") for c in configs])


@router.post("/alerts/test")
async def test_alert(body: AlertTestRequest, services: Services = Depends(get_services)) -> dict[str, typing.Any]:
    if not body.email and not body.webhook_url:
        raise InvalidQueryError("Provide an email address or a webhook URL")

    city = await _require_city(services, body.city_id)
    results = await services.dispatcher.send_test_alert(city, email=body.email, webhook_url=body.webhook_url)
    return envelope(results)
