import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL")

JWT_SECRET = os.getenv("JWT_SECRET")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

APP_URL = os.getenv("APP_URL", "http://localhost:8000").rstrip("/")

PLATFORM_FEE_BPS = int(os.getenv("PLATFORM_FEE_BPS", "500"))      # 5%
MIN_TIP_MINOR = int(os.getenv("MIN_TIP_MINOR", "1000"))            # ₹10
MAX_TIP_MINOR = int(os.getenv("MAX_TIP_MINOR", "100000000"))       # ₹10,00,000
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR").upper()

RENEWAL_PERIOD_DAYS = int(os.getenv("RENEWAL_PERIOD_DAYS", "30"))
INTENT_TTL_MINUTES = int(os.getenv("INTENT_TTL_MINUTES", "1500"))

GATEWAY_MAX_RETRIES = int(os.getenv("GATEWAY_MAX_RETRIES", "2"))
GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
