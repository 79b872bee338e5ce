# backend/stockledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location (postgresql+psycopg://... in production)
        "sqlite:///stockledger.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # PENDING orders older than this are cancelled by `flask orders cleanup-pending`
    PENDING_ORDER_TTL_HOURS = int(os.environ.get("PENDING_ORDER_TTL_HOURS", "24"))

    STOCK_HISTORY_PAGE_SIZE = int(os.environ.get("STOCK_HISTORY_PAGE_SIZE", "50"))
