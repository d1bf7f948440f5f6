import asyncio
import time
import typing
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime

import httpx
import structlog

from weather_monitor.core.constants import PROVIDER_PROBE_CITY_ID, USER_AGENT
from weather_monitor.exceptions import (
    ProviderError,
    ProviderNoResponseError,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderServerError,
    ProviderUnauthorizedError,
    ProviderUnknownError,
)
from weather_monitor.models import BatchFetchResult, FetchFailure, WeatherSnapshot
from weather_monitor.services.cache import CacheGateway, CacheKeys
from weather_monitor.settings import Settings

logger = structlog.get_logger("WeatherMonitor.Provider")

SleepFunc = Callable[[float], Awaitable[typing.Any]]

_STATUS_ERRORS: dict[int, type[ProviderError]] = {
    401: ProviderUnauthorizedError,
    404: ProviderNotFoundError,
    429: ProviderRateLimitedError,
}


class RequestBudget:
    """
    Fixed one-minute window counter for outgoing provider requests.
    When the window is used up, acquire() sleeps until it resets.
    In-process only; several collector instances do not share it.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        limit_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.limit = limit_per_minute
        self._clock = clock
        self._sleep = sleep
        self.window_start = clock()
        self.count = 0

    def _roll(self) -> None:
        now = self._clock()
        if now - self.window_start >= self.WINDOW_SECONDS:
            self.window_start = now
            self.count = 0

    @property
    def remaining(self) -> int:
        self._roll()
        return max(self.limit - self.count, 0)

    async def acquire(self) -> None:
        self._roll()
        # Concurrent waiters wake together; each one re-checks the fresh window
        while self.count >= self.limit:
            wait = self.WINDOW_SECONDS - (self._clock() - self.window_start)
            logger.warning(f"Provider request budget exhausted, waiting {wait:.1f}s for the next window")
            await self._sleep(max(wait, 0))
            self._roll()
        self.count += 1


def classify_status(status: int, body: typing.Any = None) -> ProviderError:
    detail = None
    if isinstance(body, dict):
        detail = body.get("message")
    error_cls = _STATUS_ERRORS.get(status)
    if error_cls is None and status >= 500:
        error_cls = ProviderServerError
    if error_cls is not None:
        return error_cls(status=status, detail=detail)
    return ProviderError(detail or f"OpenWeather API returned HTTP {status}.", status=status, detail=detail)


def _timestamp(value: typing.Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _round(value: typing.Any) -> float | None:
    if value is None:
        return None
    return round(float(value), 1)


def parse_current_weather(data: dict[str, typing.Any], provider_city_id: int) -> WeatherSnapshot:
    """Map an OpenWeather /weather response body onto a WeatherSnapshot."""
    main = data["main"]
    weather = (data.get("weather") or [{}])[0]
    wind = data.get("wind") or {}
    sys_info = data.get("sys") or {}

    temperature = _round(main["temp"])
    feels_like = _round(main.get("feels_like"))
    return WeatherSnapshot(
        provider_city_id=int(data.get("id") or provider_city_id),
        city_name=data.get("name", ""),
        country=sys_info.get("country", ""),
        temperature=temperature,
        feels_like=feels_like if feels_like is not None else temperature,
        temp_min=_round(main.get("temp_min")),
        temp_max=_round(main.get("temp_max")),
        humidity=float(main.get("humidity", 0)),
        pressure=float(main.get("pressure", 0)),
        wind_speed=float(wind.get("speed", 0)),
        wind_direction=float(wind.get("deg", 0)),
        cloudiness=float((data.get("clouds") or {}).get("all", 0)),
        visibility=data.get("visibility"),
        description=weather.get("description", ""),
        icon=weather.get("icon", ""),
        observed_at=_timestamp(data.get("dt")) or datetime.now(UTC),
        sunrise=_timestamp(sys_info.get("sunrise")),
        sunset=_timestamp(sys_info.get("sunset")),
    )


class OpenWeatherClient:
    """Async client for the OpenWeather current-conditions endpoint."""

    def __init__(
        self,
        settings: Settings,
        cache: CacheGateway,
        transport: httpx.AsyncBaseTransport | None = None,
        budget: RequestBudget | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.budget = budget or RequestBudget(settings.provider_rate_limit_per_minute)
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            base_url=settings.openweather_base_url,
            timeout=settings.openweather_timeout,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )
        self.stats = {"requests": 0, "successful": 0, "failed": 0, "cache_hits": 0}

    async def aclose(self) -> None:
        await self.client.aclose()

    async def fetch_current_conditions(self, provider_city_id: int) -> WeatherSnapshot:
        key = CacheKeys.provider(provider_city_id)
        cached = await self.cache.get(key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            return WeatherSnapshot.model_validate(cached)

        await self.budget.acquire()
        self.stats["requests"] += 1
        try:
            snapshot = await self._request(provider_city_id)
        except ProviderError as e:
            self.stats["failed"] += 1
            logger.error(
                "OpenWeather request failed",
                provider_city_id=provider_city_id,
                kind=e.kind,
                status=e.status,
                detail=e.detail,
            )
            raise
        self.stats["successful"] += 1

        await self.cache.set(key, snapshot.model_dump(mode="json"), self.settings.provider_cache_ttl)
        return snapshot

    async def _request(self, provider_city_id: int) -> WeatherSnapshot:
        params = {
            "id": provider_city_id,
            "appid": self.settings.openweather_api_key.get_secret_value(),
            "units": "metric",
            "lang": self.settings.openweather_language,
        }
        try:
            response = await self.client.get("/weather", params=params)
        except httpx.TransportError as e:
            # Timeouts are transport errors too
            raise ProviderNoResponseError(status=0, detail=str(e)) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200:
            raise classify_status(response.status_code, body)

        if not isinstance(body, dict):
            raise ProviderUnknownError(detail="Response body is not a JSON object")
        try:
            return parse_current_weather(body, provider_city_id)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderUnknownError(detail=f"Malformed response: {e}") from e

    async def fetch_many(
        self, provider_city_ids: Iterable[int], group_size: int = 5, pause: float = 1.0
    ) -> BatchFetchResult:
        """
        Fetch several cities in groups of `group_size`, pausing between groups.
        Every id ends up either in `results` or in `failures`.
        """
        ids = list(dict.fromkeys(provider_city_ids))
        result = BatchFetchResult()

        for start in range(0, len(ids), group_size):
            group = ids[start : start + group_size]
            outcomes = await asyncio.gather(
                *(self.fetch_current_conditions(pid) for pid in group), return_exceptions=True
            )
            for pid, outcome in zip(group, outcomes, strict=True):
                if isinstance(outcome, WeatherSnapshot):
                    result.results[pid] = outcome
                elif isinstance(outcome, ProviderError):
                    result.failures.append(FetchFailure(provider_city_id=pid, error=outcome.message, kind=outcome.kind))
                else:
                    result.failures.append(FetchFailure(provider_city_id=pid, error=str(outcome), kind="unknown"))

            if start + group_size < len(ids):
                await self._sleep(pause)

        logger.info(f"Batch fetch finished: {len(result.results)} ok, {len(result.failures)} failed")
        return result

    async def test_connection(self) -> bool:
        try:
            await self.fetch_current_conditions(PROVIDER_PROBE_CITY_ID)
            logger.info("OpenWeather API connection verified")
            return True
        except ProviderError as e:
            logger.error(f"OpenWeather API connection test failed: {e.message}")
            return False

    def usage_stats(self) -> dict[str, typing.Any]:
        return {
            **self.stats,
            "rate_limit_per_minute": self.budget.limit,
            "requests_this_minute": self.budget.count,
            "remaining_this_minute": self.budget.remaining,
        }

    def reset_usage_stats(self) -> None:
        for key in self.stats:
            self.stats[key] = 0
