import enum

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import mapped_column

from .base import Base, UUIDMixin, TimestampMixin
from .types import EncryptedString


class UserRole(str, enum.Enum):
    PATIENT = "patient"
    PHARMACIST = "pharmacist"
    ADMIN = "admin"
    SYSTEM = "system"


class User(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "users"

    username = mapped_column(String(64), unique=True, nullable=False)
    role = mapped_column(String(32), nullable=False, default=UserRole.PATIENT.value)
    password_hash = mapped_column(String(256), nullable=False)
    full_name = mapped_column(String(128), nullable=True)
    # Pharmacy display name; only set for pharmacist accounts
    pharmacy_name = mapped_column(String(128), nullable=True)
    phone = mapped_column(EncryptedString(), nullable=True)
    address = mapped_column(EncryptedString(), nullable=True)
    force_password_change = mapped_column(Boolean, default=False, nullable=False)
    last_login_at = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def display_name(self) -> str:
        return self.pharmacy_name or self.full_name or self.username
