"""Centralized billing constants — single source of truth for hardcoded values."""

# --- Session ---
COOKIE_NAME = "canvas_session"
JWT_AUDIENCE = "canvas-billing"

# --- Entitlement ---
# Shared by the entitlement check, the grant gate and the consume gate.
ENTITLED_STATUSES = frozenset({"active", "trialing"})

# --- Credits ---
DEFAULT_GRANT = 10
DEFAULT_ROLLOVER_LIMIT = 100
DEFAULT_GRANT_REASON = "periodic-grant"
INITIAL_GRANT_REASON = "initial-grant"
DEFAULT_CONSUME_REASON = "usage"
DEFAULT_ADJUST_REASON = "manual-adjustment"
CREDIT_CAS_MAX_ATTEMPTS = 3
RECENT_LEDGER_ENTRIES = 30

# --- Ledger entry types ---
ENTRY_GRANT = "grant"
ENTRY_CONSUME = "consume"
ENTRY_ADJUST = "adjust"

# --- Subscription status placeholder for order-only events ---
ORDER_ONLY_STATUS = "updated"

# --- Notification event names ---
EVENT_CREDITS_GRANTED = "billing/credits.granted"
EVENT_SUBSCRIPTION_SYNCED = "billing/subscription.synced"
EVENT_PRE_EXPIRY = "billing/subscription.pre_expiry"

# --- Scheduling ---
PRE_EXPIRY_MIN_DELAY = 5  # seconds

# --- Polar API ---
POLAR_API_URLS = {
    "production": "https://api.polar.sh",
    "sandbox": "https://sandbox-api.polar.sh",
}
POLAR_CHECKOUT_PATH = "/v1/checkouts/"

# --- HTTP Client ---
HTTP_TOTAL_TIMEOUT = 30  # seconds
HTTP_CONNECT_TIMEOUT = 10  # seconds

# --- Worker ---
ARQ_MAX_JOBS = 10
ARQ_JOB_TIMEOUT = 120  # seconds

# --- Database ---
MAX_DB_INT = 2**31 - 1  # Integer columns (ids, credit amounts)
