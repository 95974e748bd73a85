from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from ..config import get_settings


class EncryptionError(RuntimeError):
    pass


@lru_cache
def _get_fernet() -> Fernet:
    key = get_settings().FIELD_ENCRYPTION_KEY
    if not key:
        raise EncryptionError("FIELD_ENCRYPTION_KEY is not set")
    return Fernet(key.encode("utf-8"))


def encrypt_value(value: str) -> str:
    return _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_value(value: str) -> str:
    try:
        return _get_fernet().decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        raise EncryptionError("Decryption failed: invalid token")
