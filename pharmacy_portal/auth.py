from datetime import datetime, timedelta, timezone
import uuid
import jwt
import logging
import hmac
import secrets
from fastapi import Depends, Header, HTTPException, status
from passlib.context import CryptContext
from sqlalchemy.orm import Session
from .config import get_settings
from .database import get_db
from .models.user import User, UserRole

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SYSTEM_USERNAME = "system"
SELF_SERVICE_ROLES = {UserRole.PATIENT.value, UserRole.PHARMACIST.value}

ROLE_INHERITANCE = {
    "patient": {"patient"},
    "pharmacist": {"pharmacist"},
    "admin": {"admin", "system"},
    "system": {"system"},
}


class RegistrationError(ValueError):
    pass


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def ensure_default_admin(db: Session) -> None:
    settings = get_settings()
    existing = db.query(User).filter(User.username == settings.DEV_ADMIN_USERNAME).first()
    if existing:
        return
    user = User(
        username=settings.DEV_ADMIN_USERNAME,
        role=UserRole.ADMIN.value,
        password_hash=hash_password(settings.DEV_ADMIN_PASSWORD),
        force_password_change=settings.DEV_ADMIN_FORCE_CHANGE,
    )
    db.add(user)
    db.commit()


def ensure_system_user(db: Session) -> User:
    user = db.query(User).filter(User.username == SYSTEM_USERNAME).first()
    if user:
        return user
    # Not meant for interactive login; the password is random and discarded
    user = User(
        username=SYSTEM_USERNAME,
        role=UserRole.SYSTEM.value,
        password_hash=hash_password(secrets.token_urlsafe(32)),
    )
    db.add(user)
    db.commit()
    return user


def register_user(
    db: Session,
    username: str,
    password: str,
    role: str,
    full_name: str | None = None,
    pharmacy_name: str | None = None,
    phone: str | None = None,
    address: str | None = None,
) -> User:
    if role not in SELF_SERVICE_ROLES:
        raise RegistrationError("Only patient and pharmacist accounts can be registered")
    if role == UserRole.PHARMACIST.value and not pharmacy_name:
        raise RegistrationError("pharmacy_name is required for pharmacist accounts")
    if db.query(User).filter(User.username == username).first():
        raise RegistrationError("Username already taken")
    user = User(
        username=username,
        role=role,
        password_hash=hash_password(password),
        full_name=full_name,
        pharmacy_name=pharmacy_name if role == UserRole.PHARMACIST.value else None,
        phone=phone,
        address=address,
    )
    db.add(user)
    db.commit()
    logger.info("Registered %s account %s", role, user.id)
    return user


def authenticate_dev_stub(db: Session, username: str, password: str) -> User | None:
    user = db.query(User).filter(User.username == username).first()
    if not user:
        return None
    if not verify_password(password, user.password_hash):
        return None
    if pwd_context.needs_update(user.password_hash):
        user.password_hash = hash_password(password)
    user.last_login_at = datetime.now(timezone.utc)
    db.add(user)
    db.commit()
    return user


def create_access_token(user: User) -> str:
    settings = get_settings()
    if not settings.SECRET_KEY:
        raise RuntimeError("SECRET_KEY is not set")
    payload = {
        "sub": str(user.id),
        "role": user.role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.ACCESS_TOKEN_HOURS),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm="HS256")


def get_current_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    settings = get_settings()
    if settings.AUTH_MODE != "dev_stub":
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="OIDC not wired")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    if settings.SYSTEM_API_TOKEN and hmac.compare_digest(token, settings.SYSTEM_API_TOKEN):
        return ensure_system_user(db)
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
        user_id = uuid.UUID(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def role_allows(user_role: str, required_role: str) -> bool:
    return required_role in ROLE_INHERITANCE.get(user_role, set())


def require_role(required_role: str):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if not role_allows(user.role, required_role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return user

    return dependency


def require_any_role(*roles: str):
    def dependency(user: User = Depends(get_current_user)) -> User:
        if not any(role_allows(user.role, role) for role in roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return user

    return dependency
