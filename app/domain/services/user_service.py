"""
User Service - resolve WhatsApp senders to users
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.models.user import User

logger = get_logger(__name__)


class UserService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_phone(self, phone: str) -> User | None:
        result = await self.db.execute(select(User).where(User.phone == phone))
        return result.scalar_one_or_none()

    async def get_or_create(self, phone: str, name: str | None = None) -> tuple[User, bool]:
        """Returns (user, is_new). Concurrent first contacts resolve to one row."""
        user = await self.get_by_phone(phone)
        if user:
            return user, False

        try:
            async with self.db.begin_nested():
                user = User(
                    phone=phone,
                    name=TextSanitizer.sanitize(name, max_length=100) if name else None,
                    is_active=True,
                )
                self.db.add(user)
            logger.info("User created", extra_data={"phone": PhoneNumberValidator.mask(phone)})
            return user, True
        except IntegrityError:
            pass

        user = await self.get_by_phone(phone)
        if user is None:
            raise RuntimeError("user vanished after unique violation")
        return user, False
