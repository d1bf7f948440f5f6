import asyncio
import os
import time
import typing
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import psutil
import structlog

from weather_monitor.exceptions import ProviderError
from weather_monitor.models import City, CityOutcome, CollectionResult, ReadingSource
from weather_monitor.services.alerts import AlertEvaluator
from weather_monitor.services.cache import CacheGateway, CacheKeys
from weather_monitor.services.database import DatabaseHandler
from weather_monitor.services.provider import OpenWeatherClient
from weather_monitor.settings import Settings

logger = structlog.get_logger("WeatherMonitor.Collector")

SleepFunc = Callable[[float], Awaitable[typing.Any]]


class CollectionOrchestrator:
    """
    One collection pass: fetch, store and evaluate every active city in turn.
    A city that fails is recorded in the result and the pass moves on.
    """

    def __init__(
        self,
        settings: Settings,
        db: DatabaseHandler,
        cache: CacheGateway,
        provider: OpenWeatherClient,
        evaluator: AlertEvaluator,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.db = db
        self.cache = cache
        self.provider = provider
        self.evaluator = evaluator
        self.city_delay = settings.collection_city_delay
        self._sleep = sleep
        self._stop_requested = False
        self._last_error: str | None = None
        self._last_error_time: float | None = None

    def request_stop(self) -> None:
        """Let the pass in flight finish its current city, then skip the rest."""
        self._stop_requested = True

    async def collect(self, source: ReadingSource = ReadingSource.SCHEDULED) -> CollectionResult:
        result = CollectionResult(source=source, started_at=datetime.now(UTC))
        await self.write_status(f"Collecting ({source})")

        try:
            cities = await self.db.list_active_cities()
        except Exception as e:
            # Without a city list there is no pass to report; the caller decides
            logger.exception(f"Could not load active cities: {e}")
            await self.write_status("Error: City list unavailable", error=e)
            raise

        logger.info(f"Starting {source} collection for {len(cities)} cities")
        for index, city in enumerate(cities):
            if index > 0:
                if self._stop_requested:
                    break
                await self._sleep(self.city_delay)
                if self._stop_requested:
                    break
            outcome = await self.collect_city(city, source)
            result.cities.append(outcome)

        result.total = len(result.cities)
        result.successful = sum(1 for c in result.cities if c.status == "success")
        result.failed = result.total - result.successful
        result.stopped = result.total < len(cities)
        result.finished_at = datetime.now(UTC)

        if result.successful:
            await self.cache.delete(CacheKeys.CURRENT_READINGS)
            await self.cache.delete(CacheKeys.STATISTICS)

        failures = [{"city": c.city_name, "error": c.error, "kind": c.error_kind} for c in result.cities if c.error]
        logger.info(
            f"Collection finished: {result.successful} ok, {result.failed} failed",
            source=str(source),
            failures=failures,
            stopped=result.stopped,
        )
        await self.write_status(
            "Idle (Waiting for next schedule)",
            meta={"successful": result.successful, "failed": result.failed, "source": str(source)},
        )
        return result

    async def collect_city(self, city: City, source: ReadingSource) -> CityOutcome:
        try:
            snapshot = await self.provider.fetch_current_conditions(city.provider_city_id)
            reading = await self.db.insert_reading(city.id, snapshot, source)
        except ProviderError as e:
            logger.error(f"Fetch failed for {city.name}: {e.message}", kind=e.kind, status=e.status)
            return CityOutcome(
                city_id=city.id, city_name=city.name, status="error", error=e.message, error_kind=e.kind
            )
        except Exception as e:
            logger.exception(f"Storing reading failed for {city.name}: {e}")
            return CityOutcome(
                city_id=city.id, city_name=city.name, status="error", error=str(e), error_kind="storage"
            )

        alerts = 0
        try:
            alerts = len(await self.evaluator.process_reading(city, reading))
        except Exception as e:
            # The reading is stored; a broken evaluation does not undo that
            logger.exception(f"Alert evaluation failed for {city.name}: {e}")

        logger.debug(f"Collected {city.name}: {reading.temperature}°C")
        return CityOutcome(
            city_id=city.id,
            city_name=city.name,
            status="success",
            temperature=reading.temperature,
            reading_id=reading.id,
            alerts=alerts,
        )

    async def collect_now(self) -> CollectionResult:
        """Manual pass: drop the current snapshot, collect, then drop per-city history."""
        await self.cache.delete(CacheKeys.CURRENT_READINGS)
        result = await self.collect(ReadingSource.MANUAL)
        for outcome in result.cities:
            await self.cache.delete_by_pattern(CacheKeys.history_pattern(outcome.city_id))
        return result

    async def cleanup(self, days: int | None = None) -> int:
        days = days or self.settings.retention_days
        removed = await self.db.delete_readings_older_than(days)
        if removed:
            await self.cache.delete(CacheKeys.STATISTICS)
        return removed

    async def write_status(
        self, status_msg: str, error: Exception | None = None, meta: dict[str, typing.Any] | None = None
    ) -> None:
        """Heartbeat for the collector, stored in Redis."""
        if error:
            self._last_error = str(error)
            self._last_error_time = time.time()

        data = {
            "service": self.settings.service_name,
            "timestamp": time.time(),
            "status": status_msg,
            "last_error": self._last_error,
            "last_error_time": self._last_error_time,
            "cpu_percent": psutil.cpu_percent(),
            "memory_usage_mb": psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024,
            "meta": meta or {},
            "pid": os.getpid(),
        }
        # Outlive one collection interval so a missing key means the collector is gone
        ttl = self.settings.collection_interval_minutes * 60 + 300
        await self.cache.set(CacheKeys.COLLECTOR_STATUS, data, ttl)
