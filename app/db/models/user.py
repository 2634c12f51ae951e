"""
User Model - customers, sellers, workers
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Boolean

from app.core.timeutils import utcnow
from app.db.database import Base


class Capability(str, enum.Enum):
    """What a user can do beyond receiving alerts"""
    FISH_SELLER = "fish_seller"
    JOB_WORKER = "job_worker"
    SHOP_OWNER = "shop_owner"


class User(Base):
    """A WhatsApp user, identified by phone number"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)
    language = Column(String(5), nullable=False, default="en")
    is_active = Column(Boolean, default=True)
    registered_at = Column(DateTime, nullable=True)

    # Optional profile references; presence of a profile grants the capability
    fish_seller_profile_id = Column(Integer, nullable=True)
    job_worker_profile_id = Column(Integer, nullable=True)
    shop_profile_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def capabilities(self) -> frozenset[Capability]:
        profiles = {
            Capability.FISH_SELLER: self.fish_seller_profile_id,
            Capability.JOB_WORKER: self.job_worker_profile_id,
            Capability.SHOP_OWNER: self.shop_profile_id,
        }
        return frozenset(cap for cap, profile_id in profiles.items() if profile_id is not None)

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def is_registered(self) -> bool:
        return self.registered_at is not None
