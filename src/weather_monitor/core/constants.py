import os

# Paths
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

# Query limits
HISTORY_LIMIT_MAX = 1000
RECENT_ALERTS_LIMIT_MAX = 200

# Readings older than this are considered stale by the current-readings endpoint
CURRENT_READING_MAX_AGE_SECONDS = 600

# OpenWeather id used for connectivity checks (São Paulo)
PROVIDER_PROBE_CITY_ID = 3448439

# App Info
VERSION = "0.1.0"
USER_AGENT = f"WeatherMonitor/{VERSION}"
