import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as booking_core.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "booking_core.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL")
    STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL")
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")

    # Slot holds: 5 minutes to start paying, +10 once checkout is open
    SLOT_HOLD_MINUTES = int(os.getenv("SLOT_HOLD_MINUTES", "5"))
    SLOT_PAYMENT_EXTENSION_MINUTES = int(os.getenv("SLOT_PAYMENT_EXTENSION_MINUTES", "10"))
    CLAIM_MAX_RETRIES = 3

    # Reconciliation sweep
    RECONCILE_INTERVAL_MINUTES = int(os.getenv("RECONCILE_INTERVAL_MINUTES", "5"))
    RECONCILE_LOOKBACK_HOURS = int(os.getenv("RECONCILE_LOOKBACK_HOURS", "24"))
    RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "50"))
    ABANDONED_PAYMENT_MINUTES = int(os.getenv("ABANDONED_PAYMENT_MINUTES", "10"))

    # Outbox (post-booking follow-ups)
    OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
    OUTBOX_RETRY_SECONDS = int(os.getenv("OUTBOX_RETRY_SECONDS", "60"))
    OUTBOX_LEASE_SECONDS = int(os.getenv("OUTBOX_LEASE_SECONDS", "120"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Basic app settings
    DEBUG = False
