class WeatherMonitorError(Exception):
    """Base class for all errors raised by the weather monitor."""


class ProviderError(WeatherMonitorError):
    """A failed call to the weather provider, classified by HTTP status."""

    kind = "provider_error"
    default_message = "OpenWeather API request failed."

    def __init__(self, message: str | None = None, status: int = -1, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.status = status
        self.detail = detail
        super().__init__(self.message)


class ProviderUnauthorizedError(ProviderError):
    kind = "unauthorized"
    default_message = "Invalid API key. Please check your OpenWeather API key."


class ProviderNotFoundError(ProviderError):
    kind = "not_found"
    default_message = "City not found. Please check the city ID."


class ProviderRateLimitedError(ProviderError):
    kind = "rate_limited"
    default_message = "API rate limit exceeded. Please try again later."


class ProviderServerError(ProviderError):
    kind = "server_error"
    default_message = "OpenWeather API server error. Please try again later."


class ProviderNoResponseError(ProviderError):
    kind = "no_response"
    default_message = "No response from OpenWeather API. Check your internet connection."


class ProviderUnknownError(ProviderError):
    kind = "unknown"
    default_message = "Unexpected error while contacting OpenWeather API."


class InvalidQueryError(WeatherMonitorError):
    """A query was rejected before reaching storage."""


class NotificationError(WeatherMonitorError):
    """A notification channel failed to deliver."""
