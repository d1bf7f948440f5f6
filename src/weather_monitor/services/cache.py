import json
import typing

import redis.asyncio as redis
import structlog

from weather_monitor.settings import Settings

logger = structlog.get_logger("WeatherMonitor.Cache")


class CacheKeys:
    """Key builders for everything the service stores in Redis."""

    CURRENT_READINGS = "reading:current:all"
    STATISTICS = "reading:statistics"
    ALL_ALERT_CONFIGS = "alertconfig:all"
    CITY_LIST = "city:list"
    COLLECTOR_STATUS = "status:collector"
    RECENT_ALERTS_PATTERN = "alert:recent:*"

    @staticmethod
    def history(city_id: int, period: str, limit: int) -> str:
        return f"reading:history:{city_id}:{period}:{limit}"

    @staticmethod
    def history_pattern(city_id: int) -> str:
        return f"reading:history:{city_id}:*"

    @staticmethod
    def provider(provider_city_id: int) -> str:
        return f"provider:{provider_city_id}"

    @staticmethod
    def alert_configs(city_id: int) -> str:
        return f"alertconfig:{city_id}"

    @staticmethod
    def recent_alerts(limit: int) -> str:
        return f"alert:recent:{limit}"


class CacheGateway:
    """
    JSON key/value cache on Redis.
    Redis is an optimisation here: every failure is logged and turned into a
    miss or a no-op, never raised to the caller.
    """

    def __init__(self, settings: Settings, client: redis.Redis | None = None) -> None:
        self.settings = settings
        self.default_ttl = settings.cache_ttl
        self.client = client
        self.connected = client is not None

    async def connect(self) -> bool:
        if self.client is None:
            password = self.settings.redis_password
            self.client = redis.Redis(
                host=self.settings.redis_host,
                port=self.settings.redis_port,
                db=self.settings.redis_db,
                password=password.get_secret_value() if password else None,
                socket_timeout=self.settings.redis_socket_timeout,
                socket_connect_timeout=self.settings.redis_socket_timeout,
            )
        try:
            await self.client.ping()
            self.connected = True
            logger.info(f"Connected to Redis at {self.settings.redis_host}:{self.settings.redis_port}")
        except Exception as e:
            self.connected = False
            logger.warning(f"Redis unavailable, continuing without cache: {e}")
        return self.connected

    async def disconnect(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
        except Exception as e:
            logger.warning(f"Redis disconnect failed: {e}")
        self.connected = False

    async def is_healthy(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except Exception:
            return False

    async def get(self, key: str) -> typing.Any | None:
        if self.client is None:
            return None
        try:
            raw = await self.client.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: typing.Any, ttl: int | None = None) -> bool:
        if self.client is None:
            return False
        try:
            payload = json.dumps(value, default=str)
            await self.client.setex(key, ttl if ttl is not None else self.default_ttl, payload)
            return True
        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.delete(key)
            return True
        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def delete_by_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the number removed."""
        if self.client is None:
            return 0
        try:
            keys = [key async for key in self.client.scan_iter(match=pattern, count=100)]
            if not keys:
                return 0
            return int(await self.client.delete(*keys))
        except Exception as e:
            logger.error("Cache pattern delete failed", pattern=pattern, error=str(e))
            return 0

    async def exists(self, key: str) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.exists(key))
        except Exception as e:
            logger.error("Cache exists failed", key=key, error=str(e))
            return False
