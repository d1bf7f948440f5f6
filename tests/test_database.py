from datetime import UTC, datetime, timedelta

import pytest
from conftest import add_alert_config, add_city
from sqlalchemy import insert, select

from weather_monitor.exceptions import InvalidQueryError
from weather_monitor.models import AlertEvent, AlertKind, ReadingSource, WeatherSnapshot
from weather_monitor.tables import alert_events, readings


def snapshot(temp: float, provider_city_id: int = 1) -> WeatherSnapshot:
    return WeatherSnapshot(
        provider_city_id=provider_city_id,
        temperature=temp,
        feels_like=temp + 1,
        humidity=60,
        pressure=1010,
        wind_speed=2.5,
        wind_direction=90,
        description="clear sky",
        observed_at=datetime.now(UTC),
    )


async def add_reading_at(db, city_id: int, temp: float, captured_at: datetime) -> int:
    async with db.engine.begin() as conn:
        result = await conn.execute(
            insert(readings)
            .values(city_id=city_id, temperature=temp, feels_like=temp, captured_at=captured_at, source="scheduled")
            .returning(readings.c.id)
        )
        return result.scalar_one()


@pytest.mark.asyncio
async def test_list_active_cities_ordered_by_name(db):
    await add_city(db, "Santos", 1)
    await add_city(db, "Campinas", 2)
    await add_city(db, "Atibaia", 3, active=False)

    names = [c.name for c in await db.list_active_cities()]
    assert names == ["Campinas", "Santos"]


@pytest.mark.asyncio
async def test_get_city(db):
    city_id = await add_city(db, "Santos", 3449433)
    city = await db.get_city(city_id)
    assert city.provider_city_id == 3449433
    assert city.label == "Santos, SP"
    assert await db.get_city(999) is None
    assert (await db.get_city_by_provider_id(3449433)).id == city_id


@pytest.mark.asyncio
async def test_insert_reading_never_deduplicates(db):
    city_id = await add_city(db, "Santos", 1)
    first = await db.insert_reading(city_id, snapshot(20.0), ReadingSource.SCHEDULED)
    second = await db.insert_reading(city_id, snapshot(20.0), ReadingSource.SCHEDULED)

    assert first.id != second.id
    assert second.source == ReadingSource.SCHEDULED
    history = await db.reading_history(city_id, limit=10)
    assert len(history) == 2


@pytest.mark.asyncio
async def test_latest_reading_per_city(db):
    santos = await add_city(db, "Santos", 1)
    campinas = await add_city(db, "Campinas", 2)
    hidden = await add_city(db, "Atibaia", 3, active=False)
    now = datetime.now(UTC)

    await add_reading_at(db, santos, 18.0, now - timedelta(hours=2))
    await add_reading_at(db, santos, 21.0, now - timedelta(minutes=5))
    await add_reading_at(db, campinas, 25.0, now - timedelta(minutes=1))
    await add_reading_at(db, hidden, 30.0, now)

    latest = {r.city_id: r.temperature for r in await db.latest_reading_per_city()}
    assert latest == {santos: 21.0, campinas: 25.0}


@pytest.mark.asyncio
async def test_reading_history_window_and_order(db):
    city_id = await add_city(db, "Santos", 1)
    now = datetime.now(UTC)
    await add_reading_at(db, city_id, 10.0, now - timedelta(days=2))
    await add_reading_at(db, city_id, 11.0, now - timedelta(hours=3))
    await add_reading_at(db, city_id, 12.0, now - timedelta(hours=1))

    history = await db.reading_history(city_id, now - timedelta(hours=24), now, limit=100)
    assert [r.temperature for r in history] == [12.0, 11.0]

    limited = await db.reading_history(city_id, limit=1)
    assert [r.temperature for r in limited] == [12.0]


@pytest.mark.asyncio
async def test_reading_history_rejects_large_limit(db):
    with pytest.raises(InvalidQueryError):
        await db.reading_history(1, limit=1001)


@pytest.mark.asyncio
async def test_reading_history_limit_checked_before_storage(settings):
    from weather_monitor.services.database import DatabaseHandler

    # Never connected: a storage call would fail with RuntimeError
    handler = DatabaseHandler(settings)
    with pytest.raises(InvalidQueryError):
        await handler.reading_history(1, limit=5000)


@pytest.mark.asyncio
async def test_alert_configs_only_active(db):
    city_id = await add_city(db, "Santos", 1)
    active_id = await add_alert_config(db, city_id, maximum=35.0, active=True)
    await add_alert_config(db, city_id, minimum=5.0, active=False)

    configs = await db.alert_configs_for_city(city_id)
    assert [c.id for c in configs] == [active_id]
    assert configs[0].minimum is None
    assert [c.id for c in await db.all_alert_configs()] == [active_id]


@pytest.mark.asyncio
async def test_alert_event_lifecycle(db):
    city_id = await add_city(db, "Santos", 1)
    config_id = await add_alert_config(db, city_id, maximum=30.0)
    reading = await db.insert_reading(city_id, snapshot(33.0), ReadingSource.SCHEDULED)

    event = await db.insert_alert_event(
        AlertEvent(
            reading_id=reading.id,
            config_id=config_id,
            kind=AlertKind.HIGH,
            value=33.0,
            limit=30.0,
            message="hot",
        )
    )
    assert event.id is not None
    assert event.notified is False

    await db.mark_alert_notified(event.id)
    recent = await db.recent_alert_events(10)
    assert len(recent) == 1
    assert recent[0].notified is True
    assert recent[0].notified_at is not None
    assert recent[0].severity == "low"


@pytest.mark.asyncio
async def test_aggregate_statistics(db):
    santos = await add_city(db, "Santos", 1)
    await add_city(db, "Campinas", 2)
    now = datetime.now(UTC)
    await add_reading_at(db, santos, 20.0, now - timedelta(minutes=10))
    await add_reading_at(db, santos, 24.0, now - timedelta(minutes=20))
    await add_reading_at(db, santos, 40.0, now - timedelta(hours=5))
    await add_reading_at(db, santos, 50.0, now - timedelta(days=3))

    stats = await db.aggregate_statistics()
    assert stats.active_cities == 2
    assert stats.readings_24h == 3
    assert stats.alerts_24h == 0
    assert stats.avg_temperature == pytest.approx(22.0)
    assert stats.min_temperature == 20.0
    assert stats.max_temperature == 24.0


@pytest.mark.asyncio
async def test_aggregate_statistics_empty_is_neutral(db):
    stats = await db.aggregate_statistics()
    assert stats.active_cities == 0
    assert stats.avg_temperature is None
    assert stats.max_temperature is None


@pytest.mark.asyncio
async def test_delete_readings_older_than(db):
    city_id = await add_city(db, "Santos", 1)
    config_id = await add_alert_config(db, city_id, maximum=30.0)
    now = datetime.now(UTC)
    old_id = await add_reading_at(db, city_id, 35.0, now - timedelta(days=40))
    await add_reading_at(db, city_id, 20.0, now - timedelta(days=1))
    async with db.engine.begin() as conn:
        await conn.execute(
            insert(alert_events).values(
                reading_id=old_id,
                config_id=config_id,
                kind="TEMPERATURE_HIGH",
                value=35.0,
                limit=30.0,
                message="old",
                triggered_at=now - timedelta(days=40),
            )
        )

    removed = await db.delete_readings_older_than(30)

    assert removed == 1
    async with db.get_connection() as conn:
        remaining_events = (await conn.execute(select(alert_events))).fetchall()
    assert remaining_events == []
    assert len(await db.reading_history(city_id, limit=10)) == 1


@pytest.mark.asyncio
async def test_writes_before_connect_fail_clearly(settings):
    from weather_monitor.services.database import DatabaseHandler

    handler = DatabaseHandler(settings)
    with pytest.raises(RuntimeError, match="connect"):
        await handler.insert_reading(1, snapshot(20.0), ReadingSource.SCHEDULED)
    with pytest.raises(RuntimeError, match="connect"):
        await handler.mark_alert_notified(1)
    with pytest.raises(RuntimeError, match="connect"):
        await handler.delete_readings_older_than(30)
    with pytest.raises(RuntimeError, match="connect"):
        await handler.list_active_cities()
