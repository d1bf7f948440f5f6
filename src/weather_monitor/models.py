import enum
from datetime import UTC, datetime

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(UTC)


class ReadingSource(enum.StrEnum):
    LIVE = "live"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class AlertKind(enum.StrEnum):
    HIGH = "TEMPERATURE_HIGH"
    LOW = "TEMPERATURE_LOW"


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Plausible range for a surface air temperature in Celsius
TEMPERATURE_MIN = -100.0
TEMPERATURE_MAX = 60.0


def is_plausible_temperature(value: float) -> bool:
    return TEMPERATURE_MIN <= value <= TEMPERATURE_MAX


def classify_severity(value: float, limit: float) -> Severity:
    """
    Severity from the distance between the observed value and the limit.
    At least 10 degrees away is high, at most 3 degrees is low.
    """
    diff = abs(value - limit)
    if diff >= 10:
        return Severity.HIGH
    if diff <= 3:
        return Severity.LOW
    return Severity.MEDIUM


class City(BaseModel):
    id: int
    name: str
    region: str = ""
    country: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    provider_city_id: int
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def label(self) -> str:
        return f"{self.name}, {self.region}" if self.region else self.name


class WeatherSnapshot(BaseModel):
    """Current conditions as returned by the weather provider."""

    provider_city_id: int
    city_name: str = ""
    country: str = ""
    temperature: float
    feels_like: float
    temp_min: float | None = None
    temp_max: float | None = None
    humidity: float = 0.0
    pressure: float = 0.0
    wind_speed: float = 0.0
    wind_direction: float = 0.0
    cloudiness: float = 0.0
    visibility: float | None = None
    description: str = ""
    icon: str = ""
    observed_at: datetime
    sunrise: datetime | None = None
    sunset: datetime | None = None


class Reading(BaseModel):
    id: int
    city_id: int
    temperature: float
    feels_like: float
    humidity: float = 0.0
    pressure: float = 0.0
    wind_speed: float = 0.0
    wind_direction: float = 0.0
    description: str = ""
    captured_at: datetime
    source: ReadingSource = ReadingSource.SCHEDULED


class AlertConfig(BaseModel):
    id: int
    city_id: int
    kind: str = "TEMPERATURE"
    minimum: float | None = None
    maximum: float | None = None
    active: bool = True
    notification_email: str | None = None
    webhook_url: str | None = None
    created_at: datetime | None = None


class AlertEvent(BaseModel):
    id: int | None = None
    reading_id: int
    config_id: int
    kind: AlertKind
    value: float
    limit: float
    message: str
    triggered_at: datetime = Field(default_factory=utcnow)
    notified: bool = False
    notified_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def severity(self) -> Severity:
        return classify_severity(self.value, self.limit)


class Statistics(BaseModel):
    active_cities: int = 0
    readings_24h: int = 0
    alerts_24h: int = 0
    avg_temperature: float | None = None
    min_temperature: float | None = None
    max_temperature: float | None = None


class FetchFailure(BaseModel):
    provider_city_id: int
    error: str
    kind: str


class BatchFetchResult(BaseModel):
    results: dict[int, WeatherSnapshot] = Field(default_factory=dict)
    failures: list[FetchFailure] = Field(default_factory=list)


class ChannelOutcome(BaseModel):
    channel: str
    success: bool
    error: str | None = None


class CityOutcome(BaseModel):
    city_id: int
    city_name: str
    status: str
    temperature: float | None = None
    reading_id: int | None = None
    alerts: int = 0
    error: str | None = None
    error_kind: str | None = None


class CollectionResult(BaseModel):
    source: ReadingSource
    started_at: datetime
    finished_at: datetime | None = None
    total: int = 0
    successful: int = 0
    failed: int = 0
    stopped: bool = False
    cities: list[CityOutcome] = Field(default_factory=list)
