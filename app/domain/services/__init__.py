"""
Domain Services
"""
from app.domain.services.alert_service import AlertService
from app.domain.services.batch_service import BatchScheduler
from app.domain.services.delivery_log_service import DeliveryLogService
from app.domain.services.market_event_service import MarketEventService
from app.domain.services.subscription_service import SubscriptionService
from app.domain.services.user_service import UserService

__all__ = [
    "AlertService",
    "BatchScheduler",
    "DeliveryLogService",
    "MarketEventService",
    "SubscriptionService",
    "UserService",
]
