import smtplib
from urllib.parse import quote, urlencode

import apprise
import structlog

from weather_monitor.settings import Settings

logger = structlog.get_logger("WeatherMonitor.Mailer")

SMTP_VERIFY_TIMEOUT = 10


class Mailer:
    """SMTP delivery through Apprise mailto:// URLs built from settings."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def configured(self) -> bool:
        return self.settings.email_configured

    def build_url(self, recipient: str) -> str:
        s = self.settings
        # Scheme: mailtos:// when we authenticate, port 465 means implicit SSL
        scheme = "mailtos" if s.alert_email_user else "mailto"
        credentials = ""
        if s.alert_email_user:
            password = s.alert_email_password.get_secret_value() if s.alert_email_password else ""
            credentials = f"{quote(s.alert_email_user, safe='')}:{quote(password, safe='')}@"

        params = {"smtp": s.alert_email_host, "from": s.alert_email_from, "to": recipient}
        if s.alert_email_user:
            params["mode"] = "ssl" if s.alert_email_port == 465 else "starttls"
        return f"{scheme}://{credentials}{s.alert_email_host}:{s.alert_email_port}/?{urlencode(params)}"

    def _client(self, recipient: str) -> apprise.Apprise | None:
        apobj = apprise.Apprise()
        if not apobj.add(self.build_url(recipient)):
            logger.error(f"Apprise rejected the SMTP configuration for {self.settings.alert_email_host}")
            return None
        return apobj

    def verify(self) -> bool:
        """
        Connect to the SMTP server, upgrade to TLS when offered and log in,
        then quit. Sends nothing. Blocking; run it in an executor.
        """
        if not self.configured:
            return False
        if self._client(self.settings.alert_email_from) is None:
            return False

        s = self.settings
        smtp_cls = smtplib.SMTP_SSL if s.alert_email_port == 465 else smtplib.SMTP
        try:
            with smtp_cls(s.alert_email_host, s.alert_email_port, timeout=SMTP_VERIFY_TIMEOUT) as server:
                server.ehlo()
                if s.alert_email_port != 465 and server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
                if s.alert_email_user:
                    password = s.alert_email_password.get_secret_value() if s.alert_email_password else ""
                    server.login(s.alert_email_user, password)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP verification failed for {s.alert_email_host}:{s.alert_email_port}: {e}")
            return False

        logger.info(f"SMTP server {s.alert_email_host}:{s.alert_email_port} accepted the connection")
        return True

    async def send(self, recipient: str, subject: str, html: str) -> bool:
        """Send one HTML mail. Returns True if Apprise reports the delivery as done."""
        if not self.configured:
            logger.warning("Email transport not configured.")
            return False

        apobj = self._client(recipient)
        if apobj is None:
            return False

        status = bool(
            await apobj.async_notify(
                body=html,
                title=subject,
                body_format=apprise.NotifyFormat.HTML,
            )
        )
        if status:
            logger.info(f"Email sent: {subject}", to=recipient)
        else:
            logger.error(f"Failed to send email: {subject}", to=recipient)
        return status
