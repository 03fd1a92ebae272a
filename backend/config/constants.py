# backend/config/constants.py
from decimal import Decimal

# -----------------------------
# CURRENCY
# -----------------------------

CURRENCY = "INR"                      # all amounts are integer paise

# -----------------------------
# COMMISSION / WITHHOLDING
# -----------------------------

DEFAULT_COMMISSION_PERCENTAGE = Decimal("10")
WITHHOLDING_RATE_WITH_TAX_ID = Decimal("1")      # Section 194O, PAN on file
WITHHOLDING_RATE_WITHOUT_TAX_ID = Decimal("5")   # Section 194O, no PAN
WITHHOLDING_MIN_AMOUNT = 50000                   # ₹500, below this nothing is withheld

# -----------------------------
# RETRY BACKOFF
# -----------------------------

RETRY_BASE_MINUTES = 2               # delay = RETRY_BASE_MINUTES ** retry_count
TRANSFER_LOCK_SECONDS = 60 * 2       # in-flight guard for a single payout

# -----------------------------
# SCHEDULED PAYOUTS
# -----------------------------

DEFAULT_MIN_PAYOUT_AMOUNT = 100000   # ₹1,000
SCHEDULE_RUN_CLAIM_SECONDS = 60 * 60 * 24   # one claim per vendor per due date

# -----------------------------
# COD LIMITS
# -----------------------------

MAX_COD_VALUE_NEW_CUSTOMER = 200000          # ₹2,000
MAX_COD_VALUE_TRUSTED_CUSTOMER = 1000000     # ₹10,000
MIN_ORDERS_FOR_HIGH_VALUE = 3
COD_CHARGES_PERCENTAGE = 2

DEFAULT_SERVICEABLE_PINCODES = [
    # Mumbai
    "400001", "400002", "400003", "400051", "400092",
    # Delhi
    "110001", "110002", "110003", "110051", "110092",
    # Bangalore
    "560001", "560002", "560003", "560051", "560092",
    # Hyderabad
    "500001", "500002", "500003", "500051", "500092",
    # Chennai
    "600001", "600002", "600003", "600051", "600092",
    # Kolkata
    "700001", "700002", "700003", "700051", "700092",
]

# =========================================
# CUSTOMER RISK SCORING
# =========================================

RISK_NEUTRAL_SCORE = 50
RISK_SUCCESS_REDUCTION = 5           # per successful COD order
RISK_MAX_SUCCESS_REDUCTION = 30
RISK_FAILURE_INCREASE = 10           # per failed COD order
RISK_MAX_FAILURE_INCREASE = 40
RISK_RETURN_RATE_WEIGHT = 20

RISK_LOW_BELOW = 30
RISK_HIGH_FROM = 70

# -----------------------------
# RETENTION
# -----------------------------

AUDIT_RETENTION_DAYS = 90
