"""
Application configuration (environment + optional .env file).
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# SQLite file in the project root (next to the package) unless DATABASE_URL is set
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "dental_practice.sqlite"


def normalize_database_url(database_url: str) -> str:
    """Heroku/Supabase style ``postgres://`` URLs are not accepted by SQLAlchemy 2."""
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    return database_url


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings:
    """Application settings"""

    DATABASE_URL: str = normalize_database_url(os.getenv("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}")

    # Production: always set it through the environment
    JWT_SECRET: str = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
    JWT_ALG: str = "HS256"
    JWT_EXPIRE_MINUTES: int = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILE: str | None = os.getenv("LOG_FILE") or None

    CORS_ORIGINS: list[str] = _split_csv(os.getenv("CORS_ORIGINS", "*"))

    # Bootstrap account for the platform operator (skipped when unset)
    SUPERADMIN_USERNAME: str | None = os.getenv("SUPERADMIN_USERNAME") or None
    SUPERADMIN_PASSWORD: str | None = os.getenv("SUPERADMIN_PASSWORD") or None

    DEFAULT_CLINIC_NAME: str = os.getenv("DEFAULT_CLINIC_NAME", "Default Clinic")
    DEFAULT_CLINIC_SLUG: str = os.getenv("DEFAULT_CLINIC_SLUG", "default-clinic")


settings = Settings()
