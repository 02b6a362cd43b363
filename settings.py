# settings.py
import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./lms.db")
SECRET_KEY = os.getenv("SECRET_KEY", "dev")
SESSION_HTTPS_ONLY = _flag("SESSION_HTTPS_ONLY")
APP_DOMAIN = os.getenv("APP_DOMAIN", "http://localhost:8000")

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "lkr")
ORDER_PREFIX = os.getenv("ORDER_PREFIX", "ORDER")

# bootstrap identity, the only account created with is_admin=True
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@lms.com").lower()

DEFAULT_MAX_PLAYS = int(os.getenv("DEFAULT_MAX_PLAYS", "3"))
PENDING_PURCHASE_TTL_HOURS = int(os.getenv("PENDING_PURCHASE_TTL_HOURS", "24"))
PENDING_SWEEP_INTERVAL_SECONDS = int(os.getenv("PENDING_SWEEP_INTERVAL_SECONDS", "900"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SEED_DEMO_DATA = _flag("SEED_DEMO_DATA")
