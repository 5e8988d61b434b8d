import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as bookings.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "bookings.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Identity is resolved upstream; the gateway forwards these headers
    USER_ID_HEADER = "X-User-Id"
    USER_ROLES_HEADER = "X-User-Roles"

    # Slot hold window for unpaid bookings
    HOLD_WINDOW_MINUTES = int(os.getenv("HOLD_WINDOW_MINUTES", "10"))

    # Expiry sweep (off by default; the server entry point starts it)
    SWEEPER_ENABLED = os.getenv("SWEEPER_ENABLED", "false").lower() == "true"
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))

    # Cancellation policy: confirmed bookings may be cancelled up to start - cutoff
    CANCEL_CUTOFF_HOURS = int(os.getenv("CANCEL_CUTOFF_HOURS", "0"))

    # Availability grid (hourly slots, [OPENING_HOUR, CLOSING_HOUR))
    OPENING_HOUR = 6
    CLOSING_HOUR = 23

    # Check-in code length in random bytes (hex encoded)
    CHECK_IN_CODE_BYTES = 4

    CURRENCY = os.getenv("CURRENCY", "INR")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL")
    STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Basic app settings
    DEBUG = False
