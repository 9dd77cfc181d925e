import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Postgres in production (postgresql+psycopg://...), local SQLite file for development
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dispatch.db")

# Frontend origins allowed by CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:8080,capacitor://localhost",
).split(",")

# Push delivery gateway (send-push-notification endpoint). Unset = outbox rows only
PUSH_NOTIFICATION_URL = os.getenv("PUSH_NOTIFICATION_URL")
PUSH_NOTIFICATION_TOKEN = os.getenv("PUSH_NOTIFICATION_TOKEN")
PUSH_NOTIFICATION_TIMEOUT = float(os.getenv("PUSH_NOTIFICATION_TIMEOUT", "5"))

# Delivery partner broadcast (controlled parallel -> sequential)
DELIVERY_PHASE1_PARTNER_COUNT = int(os.getenv("DELIVERY_PHASE1_PARTNER_COUNT", "3"))
DELIVERY_PHASE1_TIMEOUT_SECONDS = int(os.getenv("DELIVERY_PHASE1_TIMEOUT_SECONDS", "20"))
DELIVERY_PHASE_TIMEOUT_SECONDS = int(os.getenv("DELIVERY_PHASE_TIMEOUT_SECONDS", "20"))
DELIVERY_TOTAL_TIMEOUT_SECONDS = int(os.getenv("DELIVERY_TOTAL_TIMEOUT_SECONDS", "180"))
DELIVERY_BASE_RADIUS_KM = float(os.getenv("DELIVERY_BASE_RADIUS_KM", "10"))
DELIVERY_RADIUS_STEP_KM = float(os.getenv("DELIVERY_RADIUS_STEP_KM", "10"))
DELIVERY_MAX_RADIUS_KM = float(os.getenv("DELIVERY_MAX_RADIUS_KM", "30"))
MAX_SEQUENTIAL_ATTEMPTS = int(os.getenv("MAX_SEQUENTIAL_ATTEMPTS", "10"))

# Cart order broadcast to pharmacies
CART_PHASE1_VENDOR_COUNT = int(os.getenv("CART_PHASE1_VENDOR_COUNT", "5"))
CART_PHASE1_TIMEOUT_SECONDS = int(os.getenv("CART_PHASE1_TIMEOUT_SECONDS", "15"))
CART_SEQUENTIAL_TIMEOUT_SECONDS = int(os.getenv("CART_SEQUENTIAL_TIMEOUT_SECONDS", "15"))
CART_TOTAL_TIMEOUT_SECONDS = int(os.getenv("CART_TOTAL_TIMEOUT_SECONDS", "180"))
CART_BASE_RADIUS_KM = float(os.getenv("CART_BASE_RADIUS_KM", "15"))
CART_RADIUS_STEP_KM = float(os.getenv("CART_RADIUS_STEP_KM", "10"))
CART_MAX_RADIUS_KM = float(os.getenv("CART_MAX_RADIUS_KM", "35"))

# Prescription broadcast to pharmacies (rounds of K pharmacies, 3 minutes each)
PRESCRIPTION_PHARMACIES_PER_ROUND = int(os.getenv("PRESCRIPTION_PHARMACIES_PER_ROUND", "5"))
PRESCRIPTION_ROUND_TIMEOUT_SECONDS = int(os.getenv("PRESCRIPTION_ROUND_TIMEOUT_SECONDS", "180"))
PRESCRIPTION_MAX_ROUNDS = int(os.getenv("PRESCRIPTION_MAX_ROUNDS", "3"))
PRESCRIPTION_BASE_RADIUS_KM = float(os.getenv("PRESCRIPTION_BASE_RADIUS_KM", "5"))
PRESCRIPTION_RADIUS_STEP_KM = float(os.getenv("PRESCRIPTION_RADIUS_STEP_KM", "10"))
PRESCRIPTION_MAX_RADIUS_KM = float(os.getenv("PRESCRIPTION_MAX_RADIUS_KM", "25"))

# Late responses inside this window after expires_at are still honoured (clock/network skew)
RESPONSE_GRACE_SECONDS = int(os.getenv("RESPONSE_GRACE_SECONDS", "30"))

# Start a delivery partner broadcast as soon as a pharmacy accepts a cart order
CHAIN_DELIVERY_ON_CART_ACCEPT = os.getenv("CHAIN_DELIVERY_ON_CART_ACCEPT", "true").lower() == "true"

# Escalation sweep cadence for the arq cron job
ESCALATION_SWEEP_SECONDS = int(os.getenv("ESCALATION_SWEEP_SECONDS", "5"))

# Public escalation trigger is polled by every open client dialog
ESCALATION_RATE_LIMIT = int(os.getenv("ESCALATION_RATE_LIMIT", "60"))
RESPONSE_RATE_LIMIT = int(os.getenv("RESPONSE_RATE_LIMIT", "30"))

# Reverse proxies whose X-Forwarded-For header is trusted for rate limiting (comma separated)
TRUSTED_PROXY_IPS = {ip.strip() for ip in os.getenv("TRUSTED_PROXY_IPS", "").split(",") if ip.strip()}
