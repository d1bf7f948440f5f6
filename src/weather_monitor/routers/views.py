import typing

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse

from weather_monitor.core.templates import render
from weather_monitor.dependencies import Services, get_services

logger = structlog.get_logger("WeatherMonitor.Views")
router = APIRouter()


@router.get("/", response_class=HTMLResponse)
async def dashboard(request: Request, services: Services = Depends(get_services)) -> typing.Any:
    # Render what is stored; the page never triggers a provider fetch
    cities = await services.db.list_active_cities()
    latest = {r.city_id: r for r in await services.db.latest_reading_per_city()}
    alerts = await services.db.recent_alert_events(10)
    stats = await services.db.aggregate_statistics()

    rows = [{"city": city, "reading": latest.get(city.id)} for city in cities]
    return render(
        request,
        "dashboard.html",
        {
            "rows": rows,
            "alerts": alerts,
            "stats": stats,
            "collector_running": bool(services.scheduler and services.scheduler.running),
        },
    )
