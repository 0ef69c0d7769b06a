import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
JWT_SECRET = os.getenv("JWT_SECRET")

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")
PLATFORM_FEE_RATE = float(os.getenv("PLATFORM_FEE_RATE", "0.02"))
ATOMIC_ORDER_CREATE = _flag("ATOMIC_ORDER_CREATE", "true")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "0.5"))

# Cart validation
MAX_ITEM_PRICE = 10000
MAX_ITEM_QUANTITY = 100
MAX_ORDER_TOTAL = 10000
MAX_ORDER_ITEMS = 50
MAX_CUSTOMER_NAME_LENGTH = 100
MAX_INSTRUCTIONS_LENGTH = 500
AMOUNT_TOLERANCE = 0.01

# Card eligibility
MIN_CARD_AMOUNT = 0.5
MAX_CARD_AMOUNT = 1000
SUPPORTED_CURRENCIES = ("chf", "eur", "usd", "gbp")
DEFAULT_CURRENCY = "chf"

# Order lifecycle
DUPLICATE_ORDER_WINDOW_MINUTES = 5
ABANDONED_ORDER_TIMEOUT_MINUTES = 30
MAX_CREATE_ATTEMPTS = 3

# Preparation estimate, minutes
DEFAULT_PREP_MINUTES = 15
MIN_PREP_MINUTES = 10
MAX_PREP_MINUTES = 60
PREP_BUFFER_RATIO = 0.2
PREP_PLATING_MINUTES = 5
PREP_SEQUENTIAL_RATIO = 0.1
