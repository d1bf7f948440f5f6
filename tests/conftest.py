import fnmatch
import os
import sys
import time
import typing

import pytest
from sqlalchemy import insert

# Add src to path so we can import the package
sys.path.append(os.path.join(os.path.dirname(__file__), "../src"))

from weather_monitor.services.cache import CacheGateway  # noqa: E402
from weather_monitor.services.database import DatabaseHandler  # noqa: E402
from weather_monitor.settings import Settings  # noqa: E402
from weather_monitor.tables import alert_configs, cities  # noqa: E402


class InMemoryRedis:
    """Async stand-in for redis.asyncio.Redis covering the calls CacheGateway makes."""

    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis down")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> bytes | None:
        self._check()
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.store[key] = value.encode()
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def exists(self, key: str) -> int:
        self._check()
        return int(key in self.store)

    async def scan_iter(self, match: str = "*", count: int = 100) -> typing.AsyncIterator[str]:
        self._check()
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        pass


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'weather.db'}",
        openweather_api_key="test-key",
        openweather_base_url="https://api.test/data/2.5",
        collection_city_delay=0,
        webhook_retry_attempts=3,
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def redis_client():
    return InMemoryRedis()


@pytest.fixture
def cache(settings, redis_client):
    return CacheGateway(settings, client=redis_client)


@pytest.fixture
async def db(settings):
    handler = DatabaseHandler(settings)
    await handler.connect()
    yield handler
    await handler.disconnect()


async def add_city(db: DatabaseHandler, name: str, provider_city_id: int, region: str = "SP", active: bool = True) -> int:
    async with db.engine.begin() as conn:
        result = await conn.execute(
            insert(cities)
            .values(
                name=name,
                region=region,
                country="BR",
                latitude=-23.5,
                longitude=-46.6,
                provider_city_id=provider_city_id,
                active=active,
            )
            .returning(cities.c.id)
        )
        return result.scalar_one()


async def add_alert_config(db: DatabaseHandler, city_id: int, **values: typing.Any) -> int:
    async with db.engine.begin() as conn:
        result = await conn.execute(
            insert(alert_configs).values(city_id=city_id, **values).returning(alert_configs.c.id)
        )
        return result.scalar_one()


def weather_body(provider_city_id: int = 3448439, temp: float = 25.37, **overrides: typing.Any) -> dict[str, typing.Any]:
    """A trimmed OpenWeather /weather response."""
    body = {
        "id": provider_city_id,
        "name": "São Paulo",
        "dt": int(time.time()),
        "main": {
            "temp": temp,
            "feels_like": temp + 1.04,
            "temp_min": temp - 2,
            "temp_max": temp + 2,
            "humidity": 65,
            "pressure": 1013,
        },
        "weather": [{"description": "scattered clouds", "icon": "03d"}],
        "wind": {"speed": 3.6, "deg": 140},
        "clouds": {"all": 40},
        "visibility": 10000,
        "sys": {"country": "BR", "sunrise": 1700000000, "sunset": 1700040000},
    }
    body.update(overrides)
    return body
