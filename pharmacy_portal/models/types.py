from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from ..services.encryption import decrypt_value, encrypt_value


class EncryptedString(TypeDecorator):
    """Fernet-encrypted text column for patient/pharmacy contact details."""

    impl = String
    cache_ok = True

    def __init__(self, length: int = 512, **kwargs):
        super().__init__(length, **kwargs)

    def process_bind_param(self, value, dialect):
        if value in (None, ""):
            return value
        return encrypt_value(str(value))

    def process_result_value(self, value, dialect):
        if value in (None, ""):
            return value
        return decrypt_value(value)
