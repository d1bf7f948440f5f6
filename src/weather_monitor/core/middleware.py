import time
import typing

import structlog
from fastapi import Request

logger = structlog.get_logger("WeatherMonitor.HTTP")


async def add_security_headers(
    request: Request, call_next: typing.Callable[[Request], typing.Awaitable[typing.Any]]
) -> typing.Any:
    start = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    elapsed_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
    logger.debug(f"{request.method} {request.url.path} -> {response.status_code}", elapsed_ms=round(elapsed_ms, 1))
    return response
