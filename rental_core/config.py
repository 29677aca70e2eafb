import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = LOG_LEVEL == "DEBUG"

APP_ENV = os.getenv("APP_ENV", "development").lower()
IS_PRODUCTION = APP_ENV == "production"

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL must be set in the environment")

ALLOWED_ORIGINS_RAW = os.getenv("ALLOWED_ORIGINS")
if not ALLOWED_ORIGINS_RAW:
    raise ValueError("ALLOWED_ORIGINS must be set in the environment")

ALLOWED_ORIGINS: list[str] = [
    origin.strip() for origin in ALLOWED_ORIGINS_RAW.split(",")
]

# Pricing
SERVICE_FEE_RATE = Decimal(os.getenv("SERVICE_FEE_RATE", "0.05"))
MIN_LEASE_MONTHS = int(os.getenv("MIN_LEASE_MONTHS", "0"))

# Gateways
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
DEFAULT_GATEWAY = os.getenv("DEFAULT_GATEWAY", "mobile_money").lower()

CHAPA_BASE_URL = os.getenv("CHAPA_BASE_URL", "https://api.chapa.co").rstrip("/")
CHAPA_SECRET_KEY = os.getenv("CHAPA_SECRET_KEY")
CHAPA_WEBHOOK_SECRET = os.getenv("CHAPA_WEBHOOK_SECRET")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Unsigned webhooks are only tolerated outside production unless forced on
REQUIRE_WEBHOOK_SIGNATURES = (
    os.getenv("REQUIRE_WEBHOOK_SIGNATURES", "true" if IS_PRODUCTION else "false").lower()
    == "true"
)

SERVER_URL = os.getenv("SERVER_URL", "http://localhost:8000").rstrip("/")
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000").rstrip("/")

# Collaborators
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")

# Background reconciliation
RECONCILE_STALE_MINUTES = int(os.getenv("RECONCILE_STALE_MINUTES", "15"))
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "100"))
