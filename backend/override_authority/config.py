# backend/override_authority/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///override_authority.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Password / PIN hashing cost
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    # Caller sessions
    SESSION_ABSOLUTE_TIMEOUT_HOURS = _env_int("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)
    SESSION_IDLE_TIMEOUT_HOURS = _env_int("SESSION_IDLE_TIMEOUT_HOURS", 2)

    # PIN brute-force protection
    OVERRIDE_PIN_MAX_ATTEMPTS = _env_int("OVERRIDE_PIN_MAX_ATTEMPTS", 5)
    OVERRIDE_PIN_LOCKOUT_MINUTES = _env_int("OVERRIDE_PIN_LOCKOUT_MINUTES", 15)
    OVERRIDE_PIN_WINDOW_MINUTES = _env_int("OVERRIDE_PIN_WINDOW_MINUTES", 15)
    # "memory" for a single process, "database" when several workers share lockouts
    OVERRIDE_RATE_LIMIT_STORE = os.environ.get("OVERRIDE_RATE_LIMIT_STORE", "memory")
    OVERRIDE_LOCK_BY_CREDENTIAL = _env_bool("OVERRIDE_LOCK_BY_CREDENTIAL", True)

    # PIN format
    OVERRIDE_PIN_MIN_LENGTH = _env_int("OVERRIDE_PIN_MIN_LENGTH", 4)
    OVERRIDE_PIN_MAX_LENGTH = _env_int("OVERRIDE_PIN_MAX_LENGTH", 6)

    # Asynchronous override requests
    OVERRIDE_REQUEST_TTL_MINUTES = _env_int("OVERRIDE_REQUEST_TTL_MINUTES", 10)
    OVERRIDE_REQUEST_MIN_TTL_MINUTES = _env_int("OVERRIDE_REQUEST_MIN_TTL_MINUTES", 1)
    OVERRIDE_REQUEST_MAX_TTL_MINUTES = _env_int("OVERRIDE_REQUEST_MAX_TTL_MINUTES", 60)

    # Audit writes are the only retried operation
    OVERRIDE_AUDIT_WRITE_ATTEMPTS = _env_int("OVERRIDE_AUDIT_WRITE_ATTEMPTS", 3)
