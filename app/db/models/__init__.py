"""
Database Models
"""
from app.db.models.user import User
from app.db.models.conversation_session import ConversationSession
from app.db.models.market_event import MarketEvent
from app.db.models.subscription import Subscription
from app.db.models.alert_batch import AlertBatch
from app.db.models.alert import Alert
from app.db.models.delivery_log import DeliveryLog
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "ConversationSession",
    "MarketEvent",
    "Subscription",
    "AlertBatch",
    "Alert",
    "DeliveryLog",
    "WebhookEvent",
]
