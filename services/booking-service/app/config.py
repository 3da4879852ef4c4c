import os
from decimal import Decimal

DATABASE_URL = os.getenv("BOOKING_DB")
if not DATABASE_URL:
    raise RuntimeError("BOOKING_DB environment variable is not set")

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL") or "http://payment-gateway:8000"
PAYMENT_GATEWAY_KEY = os.getenv("PAYMENT_GATEWAY_KEY") or ""
LOCATION_SERVICE_URL = os.getenv("LOCATION_SERVICE_URL") or "http://location-service:8000"

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT_SECONDS") or "5.0")

# ---- Response windows ----
SOS_RESPONSE_WINDOW_MINUTES = int(os.getenv("SOS_RESPONSE_WINDOW_MINUTES") or "15")
NORMAL_RESPONSE_WINDOW_MINUTES = int(os.getenv("NORMAL_RESPONSE_WINDOW_MINUTES") or str(24 * 60))

# ---- Pricing ----
CURRENCY = os.getenv("CURRENCY") or "usd"
DEFAULT_DEPOSIT_PERCENT = Decimal(os.getenv("DEFAULT_DEPOSIT_PERCENT") or "20")
PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT") or "10")

# ---- Payment retries ----
PAYMENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_MAX_ATTEMPTS") or "3")
PAYMENT_BACKOFF_SECONDS = float(os.getenv("PAYMENT_BACKOFF_SECONDS") or "0.5")
PAYMENT_BACKOFF_MAX_SECONDS = float(os.getenv("PAYMENT_BACKOFF_MAX_SECONDS") or "4.0")

# ---- Ranker ----
RANK_WEIGHT_DISTANCE = float(os.getenv("RANK_WEIGHT_DISTANCE") or "1.0")
RANK_WEIGHT_RATING = float(os.getenv("RANK_WEIGHT_RATING") or "0.5")
RANK_WEIGHT_RESPONSE = float(os.getenv("RANK_WEIGHT_RESPONSE") or "2.0")
RANK_WEIGHT_URGENCY = float(os.getenv("RANK_WEIGHT_URGENCY") or "1.0")
RANKER_TOP_N = int(os.getenv("RANKER_TOP_N") or "10")
SOS_MAX_DISTANCE_KM = float(os.getenv("SOS_MAX_DISTANCE_KM") or "15")
RANKING_CACHE_TTL = int(os.getenv("RANKING_CACHE_TTL") or "30")
# Grid size in degrees. 0.05 deg latitude ~ 5.55km.
RANKING_GRID_DEG = float(os.getenv("RANKING_GRID_DEG") or "0.05")

# ---- Deadlines / locking ----
EXPIRY_SWEEP_SECONDS = float(os.getenv("EXPIRY_SWEEP_SECONDS") or "30")
EXPIRY_RETRY_SECONDS = float(os.getenv("EXPIRY_RETRY_SECONDS") or "30")
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS") or "10")
