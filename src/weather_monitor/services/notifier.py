import asyncio
import typing
from datetime import UTC, datetime

import httpx
import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from weather_monitor.core.constants import USER_AGENT
from weather_monitor.core.templates import render_text
from weather_monitor.exceptions import NotificationError
from weather_monitor.models import AlertConfig, AlertEvent, AlertKind, ChannelOutcome, City
from weather_monitor.services.mailer import Mailer
from weather_monitor.settings import Settings

logger = structlog.get_logger("WeatherMonitor.Notifier")

TEST_TEMPERATURE = 35.5
TEST_FEELS_LIKE = 38.2
TEST_LIMIT = 35.0


class AlertContext(BaseModel):
    """Everything a channel needs to describe one alert."""

    city: City
    config: AlertConfig
    event: AlertEvent
    feels_like: float


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, httpx.TransportError)


def webhook_payload(context: AlertContext) -> dict[str, typing.Any]:
    event = context.event
    return {
        "alertType": str(event.kind),
        "city": context.city.label,
        "temperature": event.value,
        "threshold": event.limit,
        "timestamp": event.triggered_at.astimezone(UTC).isoformat(),
        "severity": str(event.severity),
    }


def email_context(context: AlertContext) -> dict[str, typing.Any]:
    event = context.event
    return {
        "city": context.city,
        "event": event,
        "is_high": event.kind == AlertKind.HIGH,
        "direction": "High" if event.kind == AlertKind.HIGH else "Low",
        "feels_like": context.feels_like,
        "severity": str(event.severity),
        "when": event.triggered_at.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S UTC"),
    }


class NotificationDispatcher:
    """
    Delivers alert events over email and webhook.
    Channels run concurrently; a failing channel never raises out of dispatch().
    """

    def __init__(
        self,
        settings: Settings,
        mailer: Mailer,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.settings = settings
        self.mailer = mailer
        self.client = httpx.AsyncClient(
            timeout=settings.webhook_timeout,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def dispatch(self, context: AlertContext) -> list[ChannelOutcome]:
        channels: list[tuple[str, typing.Awaitable[None]]] = []
        if self.mailer.configured and context.config.notification_email:
            channels.append(("email", self.send_email(context, context.config.notification_email)))
        if context.config.webhook_url:
            channels.append(("webhook", self.send_webhook(context, context.config.webhook_url)))

        if not channels:
            logger.info(f"No delivery channel for alert on {context.city.name}")
            return []

        results = await asyncio.gather(*(coro for _, coro in channels), return_exceptions=True)

        outcomes = []
        for (channel, _), result in zip(channels, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Alert sending failed",
                    channel=channel,
                    city=context.city.name,
                    alert_type=str(context.event.kind),
                    error=str(result),
                )
                outcomes.append(ChannelOutcome(channel=channel, success=False, error=str(result)))
            else:
                outcomes.append(ChannelOutcome(channel=channel, success=True))

        successful = sum(1 for o in outcomes if o.success)
        logger.info(
            "Alert sending completed",
            city=context.city.name,
            alert_type=str(context.event.kind),
            temperature=context.event.value,
            successful=successful,
            failed=len(outcomes) - successful,
        )
        return outcomes

    async def send_email(self, context: AlertContext, recipient: str) -> None:
        values = email_context(context)
        subject = f"Temperature Alert ({values['direction']}) - {context.city.name}"
        html = render_text("email/alert.html", values)
        if not await self.mailer.send(recipient, subject, html):
            raise NotificationError(f"Email delivery to {recipient} failed")

    async def send_webhook(self, context: AlertContext, url: str) -> None:
        payload = webhook_payload(context)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.webhook_retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self.client.post(url, json=payload)
                response.raise_for_status()
        logger.info("Webhook alert sent", url=url, city=context.city.name)

    async def verify_email_transport(self) -> bool:
        """SMTP handshake without sending, off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.mailer.verify)

    async def health_status(self) -> dict[str, typing.Any]:
        configured = self.mailer.configured
        healthy = await self.verify_email_transport() if configured else False
        if not configured:
            status = "degraded"  # webhooks still work
        elif not healthy:
            status = "unhealthy"
        else:
            status = "healthy"
        return {"status": status, "email_configured": configured, "email_connection_healthy": healthy}

    async def send_test_alert(
        self, city: City, email: str | None = None, webhook_url: str | None = None
    ) -> dict[str, bool]:
        config = AlertConfig(
            id=0,
            city_id=city.id,
            maximum=TEST_LIMIT,
            notification_email=email,
            webhook_url=webhook_url,
        )
        event = AlertEvent(
            reading_id=0,
            config_id=0,
            kind=AlertKind.HIGH,
            value=TEST_TEMPERATURE,
            limit=TEST_LIMIT,
            message=f"Test alert for {city.name}",
            triggered_at=datetime.now(UTC),
        )
        context = AlertContext(city=city, config=config, event=event, feels_like=TEST_FEELS_LIKE)

        results = {"email": False, "webhook": False}
        if email and self.mailer.configured:
            try:
                await self.send_email(context, email)
                results["email"] = True
            except Exception as e:
                logger.warning(f"Test email alert failed: {e}")
        if webhook_url:
            try:
                await self.send_webhook(context, webhook_url)
                results["webhook"] = True
            except Exception as e:
                logger.warning(f"Test webhook alert failed: {e}")
        return results
