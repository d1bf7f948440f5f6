import typing
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import and_, delete, func, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from weather_monitor.core.constants import HISTORY_LIMIT_MAX
from weather_monitor.exceptions import InvalidQueryError
from weather_monitor.models import AlertConfig, AlertEvent, City, Reading, ReadingSource, Statistics, WeatherSnapshot
from weather_monitor.services import decoders
from weather_monitor.settings import Settings
from weather_monitor.tables import Base, alert_configs, alert_events, cities, readings

logger = structlog.get_logger("WeatherMonitor.Database")


class DatabaseHandler:
    """
    Persistence gateway over an async SQLAlchemy engine.
    Every read goes through the decoders module; storage errors are not caught here.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None) -> None:
        self.settings = settings
        self.engine = engine

    async def connect(self) -> None:
        if self.engine is None:
            url = self.settings.database_url
            kwargs = {"pool_pre_ping": True}
            if url.startswith("postgresql"):
                kwargs["pool_size"] = self.settings.postgres_pool_size
            self.engine = create_async_engine(url, **kwargs)

        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        if self.settings.db_create_tables:
            async with self.get_transaction() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection established")

    async def disconnect(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database connection closed")

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise RuntimeError("DatabaseHandler.connect() has not been called")
        return self.engine

    def get_connection(self) -> AsyncConnection:
        return self._require_engine().connect()

    def get_transaction(self) -> typing.AsyncContextManager[AsyncConnection]:
        """Connection inside a transaction, committed on exit."""
        return self._require_engine().begin()

    async def is_healthy(self) -> bool:
        try:
            async with self.get_connection() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    # Cities

    async def list_active_cities(self) -> list[City]:
        query = select(cities).where(cities.c.active.is_(True)).order_by(cities.c.name, cities.c.id)
        async with self.get_connection() as conn:
            result = await conn.execute(query)
            return [decoders.decode_city(row._mapping) for row in result]

    async def get_city(self, city_id: int) -> City | None:
        async with self.get_connection() as conn:
            row = (await conn.execute(select(cities).where(cities.c.id == city_id))).fetchone()
        return decoders.decode_city(row._mapping) if row else None

    async def get_city_by_provider_id(self, provider_city_id: int) -> City | None:
        query = select(cities).where(cities.c.provider_city_id == provider_city_id)
        async with self.get_connection() as conn:
            row = (await conn.execute(query)).fetchone()
        return decoders.decode_city(row._mapping) if row else None

    # Readings

    async def insert_reading(self, city_id: int, snapshot: WeatherSnapshot, source: ReadingSource) -> Reading:
        values = {
            "city_id": city_id,
            "temperature": snapshot.temperature,
            "feels_like": snapshot.feels_like,
            "humidity": snapshot.humidity,
            "pressure": snapshot.pressure,
            "wind_speed": snapshot.wind_speed,
            "wind_direction": snapshot.wind_direction,
            "description": snapshot.description,
            "captured_at": datetime.now(UTC),
            "source": str(source),
        }
        async with self.get_transaction() as conn:
            result = await conn.execute(insert(readings).values(**values).returning(readings.c.id))
            reading_id = result.scalar_one()
        return decoders.decode_reading({"id": reading_id, **values})

    async def latest_reading_per_city(self) -> list[Reading]:
        latest = (
            select(readings.c.city_id, func.max(readings.c.captured_at).label("captured_at"))
            .group_by(readings.c.city_id)
            .subquery()
        )
        query = (
            select(readings)
            .join(
                latest,
                and_(readings.c.city_id == latest.c.city_id, readings.c.captured_at == latest.c.captured_at),
            )
            .join(cities, cities.c.id == readings.c.city_id)
            .where(cities.c.active.is_(True))
            .order_by(cities.c.name, readings.c.id.desc())
        )
        async with self.get_connection() as conn:
            result = await conn.execute(query)
            rows = [decoders.decode_reading(row._mapping) for row in result]

        # Two readings can share a capture time; keep the newest id per city
        seen: set[int] = set()
        latest_rows = []
        for reading in rows:
            if reading.city_id not in seen:
                seen.add(reading.city_id)
                latest_rows.append(reading)
        return latest_rows

    async def reading_history(
        self,
        city_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[Reading]:
        if limit < 1 or limit > HISTORY_LIMIT_MAX:
            raise InvalidQueryError(f"limit must be between 1 and {HISTORY_LIMIT_MAX}")

        query = select(readings).where(readings.c.city_id == city_id)
        if start is not None:
            query = query.where(readings.c.captured_at >= start)
        if end is not None:
            query = query.where(readings.c.captured_at <= end)
        query = query.order_by(readings.c.captured_at.desc(), readings.c.id.desc()).limit(limit)

        async with self.get_connection() as conn:
            result = await conn.execute(query)
            return [decoders.decode_reading(row._mapping) for row in result]

    async def delete_readings_older_than(self, days: int) -> int:
        """Remove readings (and the alert events pointing at them) older than `days`."""
        cutoff = datetime.now(UTC) - timedelta(days=days)
        old_ids = select(readings.c.id).where(readings.c.captured_at < cutoff)
        async with self.get_transaction() as conn:
            await conn.execute(delete(alert_events).where(alert_events.c.reading_id.in_(old_ids)))
            result = await conn.execute(delete(readings).where(readings.c.captured_at < cutoff))
        removed = result.rowcount or 0
        logger.info(f"Deleted {removed} readings older than {days} days")
        return removed

    # Alerts

    async def alert_configs_for_city(self, city_id: int) -> list[AlertConfig]:
        query = (
            select(alert_configs)
            .where(alert_configs.c.city_id == city_id, alert_configs.c.active.is_(True))
            .order_by(alert_configs.c.id)
        )
        async with self.get_connection() as conn:
            result = await conn.execute(query)
            return [decoders.decode_alert_config(row._mapping) for row in result]

    async def all_alert_configs(self) -> list[AlertConfig]:
        query = (
            select(alert_configs)
            .join(cities, cities.c.id == alert_configs.c.city_id)
            .where(alert_configs.c.active.is_(True), cities.c.active.is_(True))
            .order_by(cities.c.name, alert_configs.c.id)
        )
        async with self.get_connection() as conn:
            result = await conn.execute(query)
            return [decoders.decode_alert_config(row._mapping) for row in result]

    async def insert_alert_event(self, event: AlertEvent) -> AlertEvent:
        values = event.model_dump(exclude={"id", "severity"})
        values["kind"] = str(event.kind)
        async with self.get_transaction() as conn:
            result = await conn.execute(insert(alert_events).values(**values).returning(alert_events.c.id))
            event_id = result.scalar_one()
        return event.model_copy(update={"id": event_id})

    async def mark_alert_notified(self, event_id: int) -> None:
        query = (
            update(alert_events)
            .where(alert_events.c.id == event_id)
            .values(notified=True, notified_at=datetime.now(UTC))
        )
        async with self.get_transaction() as conn:
            await conn.execute(query)

    async def recent_alert_events(self, limit: int = 50) -> list[AlertEvent]:
        query = (
            select(alert_events)
            .order_by(alert_events.c.triggered_at.desc(), alert_events.c.id.desc())
            .limit(limit)
        )
        async with self.get_connection() as conn:
            result = await conn.execute(query)
            return [decoders.decode_alert_event(row._mapping) for row in result]

    # Statistics

    async def aggregate_statistics(self) -> Statistics:
        now = datetime.now(UTC)
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)

        query = select(
            select(func.count())
            .select_from(cities)
            .where(cities.c.active.is_(True))
            .scalar_subquery()
            .label("active_cities"),
            select(func.count())
            .select_from(readings)
            .where(readings.c.captured_at >= day_ago)
            .scalar_subquery()
            .label("readings_24h"),
            select(func.count())
            .select_from(alert_events)
            .where(alert_events.c.triggered_at >= day_ago)
            .scalar_subquery()
            .label("alerts_24h"),
            select(func.avg(readings.c.temperature))
            .where(readings.c.captured_at >= hour_ago)
            .scalar_subquery()
            .label("avg_temperature"),
            select(func.min(readings.c.temperature))
            .where(readings.c.captured_at >= hour_ago)
            .scalar_subquery()
            .label("min_temperature"),
            select(func.max(readings.c.temperature))
            .where(readings.c.captured_at >= hour_ago)
            .scalar_subquery()
            .label("max_temperature"),
        )
        async with self.get_connection() as conn:
            row = (await conn.execute(query)).fetchone()
        return decoders.decode_statistics(row._mapping if row else {})
