"""
Conversation Session Model - per-phone flow/step tracking
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON

from app.core.timeutils import utcnow
from app.db.database import Base


class ConversationSession(Base):
    """One row per phone number.

    temp_data holds the flow-scoped scratch envelope and is wiped whenever
    the flow changes; context_data survives across flows.
    """

    __tablename__ = "conversation_sessions"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    current_flow = Column(String(50), nullable=False, default="main_menu")
    current_step = Column(String(50), nullable=False, default="idle")

    temp_data = Column(JSON, default=dict)
    context_data = Column(JSON, default=dict)
    language = Column(String(5), nullable=False, default="en")

    last_message_id = Column(String(200), nullable=True)
    last_message_type = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_activity_at = Column(DateTime, default=utcnow, index=True)
