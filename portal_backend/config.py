# portal_backend/config.py
from __future__ import annotations

import os
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

load_dotenv(find_dotenv(usecwd=True))

# --- Stripe ------------------------------------------------------------------
STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")          # sk_live_xxx / sk_test_xxx
STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")  # whsec_xxx

STRIPE_PRICE_COURSE: Optional[str] = os.getenv("STRIPE_PRICE_COURSE")          # one-time price
STRIPE_PRICE_MEMBERSHIP: Optional[str] = os.getenv("STRIPE_PRICE_MEMBERSHIP")  # recurring price

# --- Site --------------------------------------------------------------------
SITE_URL: str = os.getenv("SITE_URL", "http://localhost:8888").rstrip("/")
APP_VERSION: str = os.getenv("APP_VERSION", "0.1.0")


def _cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [SITE_URL]


CORS_ALLOW_ORIGINS: List[str] = _cors_origins()

# --- Account sessions --------------------------------------------------------
JWT_SECRET: Optional[str] = os.getenv("JWT_SECRET")
JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

# --- Logging -----------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# --- Access token lifetimes (millis) ----------------------------------------
DAY_MS = 24 * 60 * 60 * 1000
RENEWAL_GRACE_MS = 7 * DAY_MS
MEMBERSHIP_FALLBACK_MS = 35 * DAY_MS
COURSE_LIFETIME_MS = 100 * 365 * DAY_MS
