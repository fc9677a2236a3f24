"""
Engine Configuration

Process-level settings read from the environment. Business settings that
admins edit at runtime (commission percent, hold days, auto-pay) live in
the affiliate_config table, not here.
"""

import os

# =============================================================================
# INFRASTRUCTURE
# =============================================================================

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

INNGEST_APP_ID = os.getenv("INNGEST_APP_ID", "commission-engine")
INNGEST_IS_PRODUCTION = os.getenv("INNGEST_IS_PRODUCTION", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# GATEWAYS
# =============================================================================

MERCADOPAGO_API_BASE = os.getenv("MERCADOPAGO_API_BASE", "https://api.mercadopago.com")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
SETTLEMENT_CURRENCY = os.getenv("SETTLEMENT_CURRENCY", "brl")

# Keys looked up through the storage get_secret() contract on every run
MERCADOPAGO_ACCESS_TOKEN_KEY = "MERCADOPAGO_ACCESS_TOKEN"
STRIPE_SECRET_KEY_KEY = "STRIPE_SECRET_KEY"

# =============================================================================
# SCHEDULER
# =============================================================================

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "3600"))  # hourly
SCHEDULER_FIRST_RUN_DELAY_SECONDS = int(os.getenv("SCHEDULER_FIRST_RUN_DELAY_SECONDS", "10"))

# Gateway rate limiting between settlements in one batch
BATCH_ITEM_DELAY_SECONDS = float(os.getenv("BATCH_ITEM_DELAY_SECONDS", "0.5"))
MANUAL_BATCH_ITEM_DELAY_SECONDS = float(os.getenv("MANUAL_BATCH_ITEM_DELAY_SECONDS", "0.3"))

# =============================================================================
# SETTLEMENT RULES (not configurable)
# =============================================================================

MIN_HOLD_DAYS = 7  # Refund/chargeback window floor
MAX_PAYOUT_ATTEMPTS = 5

DEFAULT_COMMISSION_PERCENT = 30
DEFAULT_MIN_WITHDRAWAL_CENTS = 5000
