# backend/eventpos/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/eventpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///eventpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Default VAT applied to order items when the product carries no own rate (basis points)
    DEFAULT_TAX_RATE_BPS = int(os.environ.get("DEFAULT_TAX_RATE_BPS", "1900"))

    # A movement that takes stock from above this value to at or below it fires a low_stock trigger
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "0"))

    ONLINE_SESSION_TTL_MINUTES = int(os.environ.get("ONLINE_SESSION_TTL_MINUTES", "120"))

    # Attempts for optimistic-lock / lock-timeout retries before a ConflictError reaches the caller
    RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "3"))

    # Callable (actor, organization_id, capability) -> None; None uses the built-in gate
    CAPABILITY_GATE = None

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    ]
