# Overview: Password and PIN hashing, user creation and caller authentication.

"""
Authentication Service

WHY: Every override decision must be attributable on both sides: the cashier
who asked and the manager who signed off. Callers authenticate with a
username and password; managers prove authority with a separate PIN.

SECURITY NOTES:
- Passwords and PINs hashed with bcrypt (cost from BCRYPT_ROUNDS, default 12)
- Passwords need 8+ characters with at least one letter and one digit
- Hashes are never serialized or logged
"""

from __future__ import annotations

import re

import bcrypt
from flask import current_app

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..levels import CallerRole
from ..models import User
from ..time_utils import utcnow


def _rounds() -> int:
    return int(current_app.config.get("BCRYPT_ROUNDS", 12))


def hash_secret(secret: str) -> str:
    """Hash a password or PIN with bcrypt."""
    salt = bcrypt.gensalt(rounds=_rounds())
    return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")


def check_secret(secret: str, secret_hash: str | None) -> bool:
    """
    Timing-safe comparison of a secret against a bcrypt hash.

    Returns False for malformed hashes instead of raising.
    """
    if not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if not re.search(r"[A-Za-z]", password):
        raise ValidationError("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise ValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    validate_password_strength(password)
    return hash_secret(password)


def create_user(
    username: str,
    password: str,
    role: str = CallerRole.CASHIER.value,
    email: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> User:
    """
    Create a staff account.

    Raises ValidationError for a bad role or weak password and
    ConflictError when the username is taken.
    """
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")
    try:
        role = CallerRole(str(role).strip().lower()).value
    except ValueError:
        raise ValidationError("role must be one of: cashier, manager, admin")

    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        raise ConflictError(f"Username '{username}' already exists")

    user = User(
        username=username,
        email=email,
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """Return the active user for these credentials, or None."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user or not user.is_active:
        return None
    if not check_secret(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
