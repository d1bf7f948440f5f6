from dataclasses import dataclass

from fastapi import Request

from weather_monitor.services import (
    AlertEvaluator,
    CacheGateway,
    CollectionOrchestrator,
    DatabaseHandler,
    NotificationDispatcher,
    OpenWeatherClient,
    PeriodicTask,
)
from weather_monitor.settings import Settings


@dataclass
class Services:
    """Explicitly constructed service graph, attached to app.state.services."""

    settings: Settings
    db: DatabaseHandler
    cache: CacheGateway
    provider: OpenWeatherClient
    dispatcher: NotificationDispatcher
    evaluator: AlertEvaluator
    collector: CollectionOrchestrator
    scheduler: PeriodicTask | None = None
    cleanup: PeriodicTask | None = None


def get_services(request: Request) -> Services:
    return request.app.state.services
