# backend/backoffice/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance folder by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///backoffice.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # "permissive" keeps the historical behavior (any recognized status from a
    # non-terminal order); "strict" only allows single forward steps.
    ORDER_TRANSITION_POLICY = os.environ.get("ORDER_TRANSITION_POLICY", "permissive")

    # Retry policy for lock contention / optimistic version conflicts
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF = float(os.environ.get("DB_RETRY_BACKOFF", "0.1"))

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")
