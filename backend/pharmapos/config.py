# backend/pharmapos/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmapos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pharmapos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Settlement concurrency guard
    SETTLEMENT_LOCK_TIMEOUT_SECONDS = float(os.environ.get("SETTLEMENT_LOCK_TIMEOUT_SECONDS", "5"))
    SETTLEMENT_RETRY_ATTEMPTS = int(os.environ.get("SETTLEMENT_RETRY_ATTEMPTS", "3"))
    SETTLEMENT_RETRY_BACKOFF_SECONDS = float(os.environ.get("SETTLEMENT_RETRY_BACKOFF_SECONDS", "0.1"))

    # Cart limits (same bounds the POS client enforces)
    MAX_CART_LINES = int(os.environ.get("MAX_CART_LINES", "1000"))
    MAX_LINE_QUANTITY = int(os.environ.get("MAX_LINE_QUANTITY", "100000"))
