"""
Runtime configuration read from environment variables.

Every tunable of the exam attempt engine lives here so deployments can
adjust rate limits, integrity weights and the expiry sweep without code
changes. Service functions take these values as defaults and accept
explicit overrides.
"""

import os

# Database URL; SQLite is the local development fallback
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./exam_gate.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ──────────────────────────────────────────────────────────────
# PIN registry
# ──────────────────────────────────────────────────────────────
PIN_RATE_LIMIT_WINDOW_MINUTES = int(os.getenv("PIN_RATE_LIMIT_WINDOW_MINUTES", "15"))
PIN_RATE_LIMIT_MAX_FAILURES = int(os.getenv("PIN_RATE_LIMIT_MAX_FAILURES", "10"))
PIN_GENERATION_ATTEMPT_MULTIPLIER = int(os.getenv("PIN_GENERATION_ATTEMPT_MULTIPLIER", "20"))

# Monthly PIN generation cap enforced by the capacity guard (0 = unlimited)
MAX_PINS_PER_MONTH = int(os.getenv("MAX_PINS_PER_MONTH", "0"))

# ──────────────────────────────────────────────────────────────
# Integrity scoring
# ──────────────────────────────────────────────────────────────
INTEGRITY_WARNING_WEIGHT = float(os.getenv("INTEGRITY_WARNING_WEIGHT", "5"))
INTEGRITY_CRITICAL_WEIGHT = float(os.getenv("INTEGRITY_CRITICAL_WEIGHT", "15"))
INTEGRITY_FLAG_THRESHOLD = float(os.getenv("INTEGRITY_FLAG_THRESHOLD", "75"))

# Seconds between server-side sweeps of expired attempts (0 disables the sweep)
EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))

# Shared secret for /admin routes; empty leaves them open (local development)
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")

# A 'submitting' lock older than this is treated as abandoned and reclaimed by the sweep
SUBMIT_LOCK_TIMEOUT_SECONDS = int(os.getenv("SUBMIT_LOCK_TIMEOUT_SECONDS", "120"))
