"""
Service Settings

Centralized configuration for the results engine.
All settings are loaded from environment variables.
"""
import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return float(value)


class Settings:
    """
    Settings for the application.

    To add a new setting:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Use it in your code
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./exam_results.db")

    # Caller identity tokens
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # External written-answer evaluator
    EVALUATION_SERVICE_URL: str = os.getenv("EVALUATION_SERVICE_URL", "http://localhost:9000")
    EVALUATION_SERVICE_API_KEY: str = os.getenv("EVALUATION_SERVICE_API_KEY", "")
    EVALUATION_TIMEOUT_SECONDS: float = get_float_env("EVALUATION_TIMEOUT_SECONDS", 60.0)
    EVALUATION_MAX_CONCURRENCY: int = get_int_env("EVALUATION_MAX_CONCURRENCY", 4)
    DEFAULT_LANGUAGE_HINT: str = os.getenv("DEFAULT_LANGUAGE_HINT", "english")

    # Qualification. The default only applies to sessions without their own threshold.
    DEFAULT_QUALIFICATION_THRESHOLD: Decimal = Decimal(os.getenv("DEFAULT_QUALIFICATION_THRESHOLD", "40"))
    WAITING_LIST_RATIO: Decimal = Decimal(os.getenv("WAITING_LIST_RATIO", "0.8"))

    FEATURE_AUTO_EVALUATE_ON_FINALIZE: bool = get_bool_env('FEATURE_AUTO_EVALUATE_ON_FINALIZE', True)


settings = Settings()
