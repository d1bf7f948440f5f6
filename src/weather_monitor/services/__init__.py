from .alerts import AlertEvaluator
from .cache import CacheGateway, CacheKeys
from .collector import CollectionOrchestrator
from .database import DatabaseHandler
from .mailer import Mailer
from .notifier import AlertContext, NotificationDispatcher
from .provider import OpenWeatherClient, RequestBudget
from .scheduler import PeriodicTask
