# backend/stockline/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockline.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockline.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Pricing: tax in basis points (800 = 8%), tolerance for client-supplied totals
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 800)
    PRICE_TOLERANCE_CENTS = _env_int("PRICE_TOLERANCE_CENTS", 1)
    MAX_CART_LINES = _env_int("MAX_CART_LINES", 100)

    # Loyalty: points earned per whole currency unit, points needed for one unit of discount
    LOYALTY_EARN_POINTS_PER_UNIT = _env_int("LOYALTY_EARN_POINTS_PER_UNIT", 1)
    LOYALTY_REDEMPTION_POINTS_PER_UNIT = _env_int("LOYALTY_REDEMPTION_POINTS_PER_UNIT", 100)
    # PRE_REDEMPTION: earn on the total before the points discount; POST_REDEMPTION: after
    LOYALTY_EARN_BASIS = os.environ.get("LOYALTY_EARN_BASIS", "PRE_REDEMPTION")
    LOYALTY_REWARD_TTL_DAYS = _env_int("LOYALTY_REWARD_TTL_DAYS", 365)

    INVOICE_PREFIX = os.environ.get("INVOICE_PREFIX", "INV")

    # "log" writes events to the app logger, "memory" keeps them in-process
    NOTIFICATION_RELAY = os.environ.get("NOTIFICATION_RELAY", "log")

    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    # Comma separated; the POS frontend dev servers by default
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    )
