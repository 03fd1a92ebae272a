import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
RUN_WORKERS = _env_bool("RUN_WORKERS", True)

# =====================================================
# STORE
# =====================================================
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "settlement")

# =====================================================
# PAYMENT GATEWAY
# =====================================================
PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "razorpay")
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", 20))

# =====================================================
# SECRETS
# =====================================================
DELIVERY_WEBHOOK_SECRET = os.getenv("DELIVERY_WEBHOOK_SECRET")
LOGISTICS_WEBHOOK_SECRET = os.getenv("LOGISTICS_WEBHOOK_SECRET")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

# =====================================================
# PAYOUTS / RETRIES
# =====================================================
PAYOUT_MAX_RETRIES = int(os.getenv("PAYOUT_MAX_RETRIES", 5))
RETRY_SCAN_INTERVAL_SECONDS = int(os.getenv("RETRY_SCAN_INTERVAL_SECONDS", 60))
HOLD_RELEASE_SCAN_INTERVAL_SECONDS = int(os.getenv("HOLD_RELEASE_SCAN_INTERVAL_SECONDS", 60 * 15))
HOLD_UNTIL_DELIVERY_DAYS = int(os.getenv("HOLD_UNTIL_DELIVERY_DAYS", 7))
SCHEDULED_PAYOUT_SCAN_INTERVAL_SECONDS = int(os.getenv("SCHEDULED_PAYOUT_SCAN_INTERVAL_SECONDS", 60 * 60))

# =====================================================
# WEBHOOKS
# =====================================================
WEBHOOK_EVENT_RETENTION_DAYS = int(os.getenv("WEBHOOK_EVENT_RETENTION_DAYS", 7))

# =====================================================
# COD / RISK
# =====================================================
RISK_PROFILE_CACHE_SECONDS = int(os.getenv("RISK_PROFILE_CACHE_SECONDS", 60 * 60 * 24))
PINCODE_CACHE_SECONDS = int(os.getenv("PINCODE_CACHE_SECONDS", 60 * 60 * 24 * 7))
COD_SERVICEABLE_PINCODES = [
    code.strip()
    for code in os.getenv("COD_SERVICEABLE_PINCODES", "").split(",")
    if code.strip()
]
COD_ACCEPT_ANY_VALID_PINCODE = _env_bool("COD_ACCEPT_ANY_VALID_PINCODE", True)

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "ADMIN_API_KEY": ADMIN_API_KEY,
        "DELIVERY_WEBHOOK_SECRET": DELIVERY_WEBHOOK_SECRET,
        "LOGISTICS_WEBHOOK_SECRET": LOGISTICS_WEBHOOK_SECRET,
        "RAZORPAY_KEY_ID": RAZORPAY_KEY_ID,
        "RAZORPAY_KEY_SECRET": RAZORPAY_KEY_SECRET,
        "RAZORPAY_WEBHOOK_SECRET": RAZORPAY_WEBHOOK_SECRET,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")

    if STORE_BACKEND != "mongo" or PAYMENT_GATEWAY != "razorpay":
        raise RuntimeError("Production must run against mongo and razorpay")
