"""Authentication helpers: password hashing, user registration and tokens."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

import jwt
import structlog
from passlib.context import CryptContext
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carebridge.config import Settings, get_settings
from carebridge.db.models import User, UserRole
from carebridge.errors import ConflictError, InvalidInputError, NotFoundError
from carebridge.time_utils import iso_timestamp, utc_now

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

logger = structlog.get_logger(__name__)


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except (TypeError, ValueError):
        return False


def _normalise_role(role: Optional[str]) -> str:
    value = (role or UserRole.PATIENT.value).strip().lower()
    try:
        return UserRole(value).value
    except ValueError as exc:
        raise InvalidInputError(f"Unknown role '{role}'") from exc


def register_user(
    session: Session,
    username: str,
    email: str,
    password: str,
    role: Optional[str] = None,
) -> User:
    """Create a user account and return it.

    Raises :class:`ConflictError` when the username or email is taken.
    """

    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not username or not email or not password:
        raise InvalidInputError("username, email and password are required")
    resolved_role = _normalise_role(role)

    existing = session.execute(
        select(User.id).where(or_(User.username == username, User.email == email))
    ).first()
    if existing is not None:
        raise ConflictError("Username or email already registered")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=resolved_role,
        profile_completed=False,
        created_at=utc_now(),
    )
    session.add(user)
    session.flush()
    logger.info("user_registered", user_id=user.id, role=resolved_role)
    return user


def authenticate_user(session: Session, identifier: str, password: str) -> Optional[User]:
    """Validate credentials given a username or email.

    Returns the user when valid, otherwise ``None``.
    """

    value = (identifier or "").strip()
    if not value:
        return None
    user = session.execute(
        select(User).where(or_(User.username == value, User.email == value.lower()))
    ).scalars().first()
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def list_users(session: Session) -> List[User]:
    return list(session.execute(select(User).order_by(User.id)).scalars())


def delete_user(session: Session, user_id: int) -> None:
    """Delete a user account.

    Raises :class:`NotFoundError` when absent and :class:`ConflictError` when
    other records still reference the user.
    """

    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    session.delete(user)
    try:
        session.flush()
    except IntegrityError as exc:
        raise ConflictError(
            "Cannot delete user due to related records. Check foreign key constraints."
        ) from exc
    logger.info("user_deleted", user_id=user_id)


def serialise_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "profile_completed": bool(user.profile_completed),
        "created_at": iso_timestamp(user.created_at),
    }


def create_access_token(
    user: User,
    *,
    settings: Optional[Settings] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Return a signed JWT carrying the user's id, role and username."""

    resolved = settings or get_settings()
    minutes = expires_minutes or resolved.access_token_expire_minutes
    payload = {
        "sub": str(user.id),
        "uid": int(user.id),
        "role": user.role,
        "username": user.username,
        "exp": utc_now() + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, resolved.jwt_secret, algorithm=resolved.jwt_algorithm)


def decode_token(token: str, *, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Decode *token*, raising :class:`jwt.PyJWTError` when invalid or expired."""

    resolved = settings or get_settings()
    return jwt.decode(token, resolved.jwt_secret, algorithms=[resolved.jwt_algorithm])


def token_user_id(claims: Dict[str, Any]) -> Optional[int]:
    """Return the numeric user id carried by decoded *claims*."""

    for key in ("uid", "sub"):
        value = claims.get(key)
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


__all__ = [
    "authenticate_user",
    "create_access_token",
    "decode_token",
    "delete_user",
    "hash_password",
    "list_users",
    "pwd_context",
    "register_user",
    "serialise_user",
    "token_user_id",
    "verify_password",
]
