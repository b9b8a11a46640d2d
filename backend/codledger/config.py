# backend/codledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Postgres in production; SQLite file for local development
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///codledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound for every statement inside a reconciliation transaction (Postgres only)
    RECONCILIATION_STATEMENT_TIMEOUT_MS = int(os.environ.get("RECONCILIATION_STATEMENT_TIMEOUT_MS", "30000"))

    SETTLEMENT_CODE_PREFIX = os.environ.get("SETTLEMENT_CODE_PREFIX", "LIQ")
    SETTLEMENT_SEQUENCE_MAX = 999

    DEFAULT_FAILED_ATTEMPT_FEE_PERCENT = int(os.environ.get("DEFAULT_FAILED_ATTEMPT_FEE_PERCENT", "50"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
