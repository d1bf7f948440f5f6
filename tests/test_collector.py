from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from weather_monitor.exceptions import ProviderUnauthorizedError
from weather_monitor.models import City, Reading, ReadingSource, WeatherSnapshot
from weather_monitor.services.cache import CacheKeys
from weather_monitor.services.collector import CollectionOrchestrator

CITIES = [
    City(id=1, name="Campinas", region="SP", provider_city_id=3467865),
    City(id=2, name="Santos", region="SP", provider_city_id=3449433),
    City(id=3, name="Sao Paulo", region="SP", provider_city_id=3448439),
]


def snapshot_for(provider_city_id: int) -> WeatherSnapshot:
    return WeatherSnapshot(
        provider_city_id=provider_city_id, temperature=24.0, feels_like=25.0, observed_at=datetime.now(UTC)
    )


def make_orchestrator(settings, cache, fetch_side_effect=None, sleep=None):
    db = MagicMock()
    db.list_active_cities = AsyncMock(return_value=list(CITIES))

    async def insert_reading(city_id, snapshot, source):
        return Reading(
            id=100 + city_id,
            city_id=city_id,
            temperature=snapshot.temperature,
            feels_like=snapshot.feels_like,
            captured_at=datetime.now(UTC),
            source=source,
        )

    db.insert_reading = AsyncMock(side_effect=insert_reading)

    provider = MagicMock()
    provider.fetch_current_conditions = AsyncMock(side_effect=fetch_side_effect or snapshot_for)

    evaluator = MagicMock()
    evaluator.process_reading = AsyncMock(return_value=[])

    orchestrator = CollectionOrchestrator(
        settings, db, cache, provider, evaluator, sleep=sleep or AsyncMock()
    )
    return orchestrator, db, provider, evaluator


@pytest.mark.asyncio
async def test_scenario_one_city_unauthorized(settings, cache):
    """Three cities, the second one fails with 401: two successes and one classified failure."""

    async def fetch(provider_city_id):
        if provider_city_id == CITIES[1].provider_city_id:
            raise ProviderUnauthorizedError(status=401, detail="Invalid API key")
        return snapshot_for(provider_city_id)

    await cache.set(CacheKeys.CURRENT_READINGS, [{"stale": True}])
    orchestrator, db, _, evaluator = make_orchestrator(settings, cache, fetch)

    result = await orchestrator.collect(ReadingSource.SCHEDULED)

    assert result.successful == 2
    assert result.failed == 1
    failure = [c for c in result.cities if c.status == "error"][0]
    assert failure.city_name == "Santos"
    assert "Invalid API key" in failure.error
    assert failure.error_kind == "unauthorized"
    assert db.insert_reading.await_count == 2
    assert evaluator.process_reading.await_count == 2
    assert await cache.get(CacheKeys.CURRENT_READINGS) is None


@pytest.mark.asyncio
async def test_cities_processed_in_order_with_delay(settings, cache):
    sleep = AsyncMock()
    settings = settings.model_copy(update={"collection_city_delay": 1.0})
    orchestrator, _, provider, _ = make_orchestrator(settings, cache, sleep=sleep)

    await orchestrator.collect()

    fetched = [call.args[0] for call in provider.fetch_current_conditions.await_args_list]
    assert fetched == [c.provider_city_id for c in CITIES]
    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 1.0]


@pytest.mark.asyncio
async def test_all_failures_keep_current_cache(settings, cache):
    async def fetch(provider_city_id):
        raise ProviderUnauthorizedError(status=401)

    await cache.set(CacheKeys.CURRENT_READINGS, [{"kept": True}])
    orchestrator, _, _, _ = make_orchestrator(settings, cache, fetch)

    result = await orchestrator.collect()

    assert result.successful == 0
    assert await cache.get(CacheKeys.CURRENT_READINGS) == [{"kept": True}]


@pytest.mark.asyncio
async def test_storage_failure_is_per_city(settings, cache):
    orchestrator, db, _, _ = make_orchestrator(settings, cache)
    real_insert = db.insert_reading.side_effect

    async def flaky_insert(city_id, snapshot, source):
        if city_id == 1:
            raise OSError("connection reset")
        return await real_insert(city_id, snapshot, source)

    db.insert_reading.side_effect = flaky_insert
    result = await orchestrator.collect()

    assert [c.status for c in result.cities] == ["error", "success", "success"]
    assert result.cities[0].error_kind == "storage"


@pytest.mark.asyncio
async def test_evaluation_failure_still_counts_as_success(settings, cache):
    orchestrator, _, _, evaluator = make_orchestrator(settings, cache)
    evaluator.process_reading.side_effect = RuntimeError("dispatcher blew up")

    result = await orchestrator.collect()

    assert result.successful == 3
    assert result.failed == 0


@pytest.mark.asyncio
async def test_scenario_collect_now_cache_order(settings, cache):
    """Manual collection clears the current key first, then collects, then clears every history key."""
    events = []

    async def fetch(provider_city_id):
        events.append(("fetch", provider_city_id))
        return snapshot_for(provider_city_id)

    orchestrator, _, _, _ = make_orchestrator(settings, cache, fetch)
    for city in CITIES:
        await cache.set(CacheKeys.history(city.id, "24h", 100), [])
    await cache.set(CacheKeys.history(99, "24h", 100), [])

    real_delete = cache.delete
    real_delete_by_pattern = cache.delete_by_pattern

    async def spy_delete(key):
        events.append(("delete", key))
        return await real_delete(key)

    async def spy_delete_by_pattern(pattern):
        events.append(("delete_by_pattern", pattern))
        return await real_delete_by_pattern(pattern)

    cache.delete = spy_delete
    cache.delete_by_pattern = spy_delete_by_pattern

    result = await orchestrator.collect_now()

    assert result.source == ReadingSource.MANUAL
    assert events[0] == ("delete", CacheKeys.CURRENT_READINGS)
    fetch_positions = [i for i, e in enumerate(events) if e[0] == "fetch"]
    pattern_positions = [i for i, e in enumerate(events) if e[0] == "delete_by_pattern"]
    assert len(fetch_positions) == 3
    assert max(fetch_positions) < min(pattern_positions)
    assert [events[i][1] for i in pattern_positions] == [CacheKeys.history_pattern(c.id) for c in CITIES]
    for city in CITIES:
        assert await cache.exists(CacheKeys.history(city.id, "24h", 100)) is False
    assert await cache.exists(CacheKeys.history(99, "24h", 100)) is True


@pytest.mark.asyncio
async def test_request_stop_finishes_current_city(settings, cache):
    orchestrator = None

    async def fetch(provider_city_id):
        if provider_city_id == CITIES[0].provider_city_id:
            orchestrator.request_stop()
        return snapshot_for(provider_city_id)

    orchestrator, db, _, _ = make_orchestrator(settings, cache, fetch)
    result = await orchestrator.collect()

    assert [c.city_id for c in result.cities] == [1]
    assert result.cities[0].status == "success"
    assert result.stopped is True
    assert db.insert_reading.await_count == 1


@pytest.mark.asyncio
async def test_heartbeat_written(settings, cache, redis_client):
    orchestrator, _, _, _ = make_orchestrator(settings, cache)
    await orchestrator.collect()

    status = await cache.get(CacheKeys.COLLECTOR_STATUS)
    assert status["service"] == settings.service_name
    assert status["meta"]["successful"] == 3
    assert "cpu_percent" in status
    assert redis_client.ttls[CacheKeys.COLLECTOR_STATUS] == settings.collection_interval_minutes * 60 + 300


@pytest.mark.asyncio
async def test_city_list_failure_propagates(settings, cache):
    orchestrator, db, provider, _ = make_orchestrator(settings, cache)
    db.list_active_cities.side_effect = OSError("db unreachable")

    with pytest.raises(OSError, match="db unreachable"):
        await orchestrator.collect()

    provider.fetch_current_conditions.assert_not_called()
    status = await cache.get(CacheKeys.COLLECTOR_STATUS)
    assert status["status"] == "Error: City list unavailable"
    assert status["last_error"] == "db unreachable"


@pytest.mark.asyncio
async def test_cleanup_uses_retention_default(settings, cache):
    orchestrator, db, _, _ = make_orchestrator(settings, cache)
    db.delete_readings_older_than = AsyncMock(return_value=4)

    assert await orchestrator.cleanup() == 4
    db.delete_readings_older_than.assert_awaited_once_with(settings.retention_days)
