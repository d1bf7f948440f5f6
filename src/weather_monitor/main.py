import typing
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from weather_monitor.core.constants import VERSION
from weather_monitor.core.logging import setup_logging
from weather_monitor.core.middleware import add_security_headers
from weather_monitor.dependencies import Services
from weather_monitor.exceptions import InvalidQueryError
from weather_monitor.models import ReadingSource
from weather_monitor.routers import api, views
from weather_monitor.services import (
    AlertEvaluator,
    CacheGateway,
    CollectionOrchestrator,
    DatabaseHandler,
    Mailer,
    NotificationDispatcher,
    OpenWeatherClient,
    PeriodicTask,
)
from weather_monitor.settings import Settings, settings

logger = structlog.get_logger("WeatherMonitor")

CLEANUP_INTERVAL_SECONDS = 24 * 3600
CLEANUP_INITIAL_DELAY_SECONDS = 3600


def build_services(config: Settings) -> Services:
    """Wire the service graph. Nothing connects until start_services()."""
    cache = CacheGateway(config)
    db = DatabaseHandler(config)
    provider = OpenWeatherClient(config, cache)
    dispatcher = NotificationDispatcher(config, Mailer(config))
    evaluator = AlertEvaluator(db, cache, dispatcher)
    collector = CollectionOrchestrator(config, db, cache, provider, evaluator)
    return Services(
        settings=config,
        db=db,
        cache=cache,
        provider=provider,
        dispatcher=dispatcher,
        evaluator=evaluator,
        collector=collector,
    )


async def start_services(services: Services) -> None:
    config = services.settings
    await services.db.connect()
    await services.cache.connect()

    if services.dispatcher.mailer.configured:
        if await services.dispatcher.verify_email_transport():
            logger.info("Email transport ready")
        else:
            logger.warning("Email transport configured but not usable, only webhooks will be delivered")
    else:
        logger.warning("Email transport not configured, only webhooks will be delivered")

    # Without a working provider the schedule would only produce failures
    if await services.provider.test_connection():
        services.scheduler = PeriodicTask(
            "collection",
            lambda: services.collector.collect(ReadingSource.SCHEDULED),
            interval=config.collection_interval_minutes * 60,
            initial_delay=config.collection_initial_delay,
        )
        services.scheduler.start()
    else:
        logger.warning("OpenWeather API unreachable, scheduled collection disabled")

    services.cleanup = PeriodicTask(
        "cleanup",
        services.collector.cleanup,
        interval=CLEANUP_INTERVAL_SECONDS,
        initial_delay=CLEANUP_INITIAL_DELAY_SECONDS,
    )
    services.cleanup.start()
    await services.collector.write_status("Started")


async def stop_services(services: Services) -> None:
    services.collector.request_stop()
    for task in (services.scheduler, services.cleanup):
        if task is not None:
            await task.stop()
    await services.provider.aclose()
    await services.dispatcher.aclose()
    await services.cache.disconnect()
    await services.db.disconnect()


@asynccontextmanager
async def lifespan(app: FastAPI) -> typing.AsyncGenerator[None, None]:
    setup_logging(settings.log_level, settings.log_dir)
    logger.info("Starting Weather Monitor", settings=settings.redacted())

    services = build_services(settings)
    app.state.services = services
    await start_services(services)
    yield
    logger.info("Shutting down Weather Monitor")
    await stop_services(services)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def invalid_query_handler(request: Request, exc: InvalidQueryError) -> JSONResponse:
    return _error(400, str(exc))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
    return _error(400, details or "Invalid request")


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


async def storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Storage unavailable: {exc}", path=request.url.path)
    return _error(503, "Service temporarily unavailable")


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error: {exc}", path=request.url.path)
    return _error(500, "Internal server error")


def create_app(with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(title="Weather Monitor", version=VERSION, lifespan=lifespan if with_lifespan else None)
    app.middleware("http")(add_security_headers)

    app.add_exception_handler(InvalidQueryError, invalid_query_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    app.add_exception_handler(OSError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(api.router)
    app.include_router(views.router)
    return app


app = create_app()


def main() -> None:
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
