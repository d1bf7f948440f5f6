import structlog
from pydantic import TypeAdapter

from weather_monitor.models import AlertConfig, AlertEvent, AlertKind, City, Reading
from weather_monitor.services.cache import CacheGateway, CacheKeys
from weather_monitor.services.database import DatabaseHandler
from weather_monitor.services.notifier import AlertContext, NotificationDispatcher

logger = structlog.get_logger("WeatherMonitor.Alerts")

ALERT_CONFIG_CACHE_TTL = 1800

_config_list = TypeAdapter(list[AlertConfig])


def evaluate(reading: Reading, config: AlertConfig) -> AlertEvent | None:
    """
    Compare one reading against one threshold rule.
    The maximum is checked first; both bounds are inclusive. A threshold of
    None means unset, 0 is a valid threshold.
    """
    temperature = reading.temperature
    if config.maximum is not None and temperature >= config.maximum:
        kind, limit = AlertKind.HIGH, config.maximum
        message = f"Temperature {temperature}°C is at or above the maximum of {limit}°C"
    elif config.minimum is not None and temperature <= config.minimum:
        kind, limit = AlertKind.LOW, config.minimum
        message = f"Temperature {temperature}°C is at or below the minimum of {limit}°C"
    else:
        return None

    return AlertEvent(
        reading_id=reading.id,
        config_id=config.id,
        kind=kind,
        value=temperature,
        limit=limit,
        message=message,
    )


class AlertEvaluator:
    def __init__(self, db: DatabaseHandler, cache: CacheGateway, dispatcher: NotificationDispatcher) -> None:
        self.db = db
        self.cache = cache
        self.dispatcher = dispatcher

    async def configs_for_city(self, city_id: int) -> list[AlertConfig]:
        key = CacheKeys.alert_configs(city_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return _config_list.validate_python(cached)

        configs = await self.db.alert_configs_for_city(city_id)
        await self.cache.set(key, _config_list.dump_python(configs, mode="json"), ALERT_CONFIG_CACHE_TTL)
        return configs

    async def process_reading(self, city: City, reading: Reading) -> list[AlertEvent]:
        """
        Evaluate a freshly stored reading against the city's active rules,
        persist and dispatch every match. Returns the events that were stored.
        """
        try:
            configs = await self.configs_for_city(city.id)
        except Exception as e:
            logger.error(f"Failed to load alert configs for {city.name}: {e}", city_id=city.id)
            return []

        if not configs:
            logger.debug(f"No alert configurations for {city.name}")
            return []

        events: list[AlertEvent] = []
        for config in configs:
            try:
                event = await self._process_config(city, reading, config)
            except Exception as e:
                logger.error(
                    f"Alert processing failed for {city.name}: {e}", config_id=config.id, reading_id=reading.id
                )
                continue
            if event is not None:
                events.append(event)

        if events:
            await self.cache.delete_by_pattern(CacheKeys.RECENT_ALERTS_PATTERN)
        return events

    async def _process_config(self, city: City, reading: Reading, config: AlertConfig) -> AlertEvent | None:
        candidate = evaluate(reading, config)
        if candidate is None:
            return None

        logger.warning(
            f"{candidate.kind} alert for {city.name}: {candidate.value}°C (limit {candidate.limit}°C)",
            severity=str(candidate.severity),
        )
        event = await self.db.insert_alert_event(candidate)

        context = AlertContext(city=city, config=config, event=event, feels_like=reading.feels_like)
        outcomes = await self.dispatcher.dispatch(context)
        if any(outcome.success for outcome in outcomes):
            await self.db.mark_alert_notified(event.id)
            event = event.model_copy(update={"notified": True})
        return event
