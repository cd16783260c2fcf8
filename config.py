import os

from dotenv import load_dotenv

load_dotenv()

class Settings:
    # --- Database ---
    # Unset -> in-memory key-value store (single process only)
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")

    # Messages sent by this id are never treated as commands
    BOT_ID = os.environ.get("BOT_ID", TELNYX_FROM_NUMBER or "")

    # --- Commands ---
    COOL_TIME_DUR_SEC = int(os.environ.get("COOL_TIME_DUR_SEC", "60"))
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "UTC")

    # --- Sweep ---
    SWEEP_INTERVAL_SEC = float(os.environ.get("SWEEP_INTERVAL_SEC", "60"))
    SWEEP_MODE = os.environ.get("SWEEP_MODE", "celery")  # "celery" or "inline"
    SWEEP_LEASE_TTL_SEC = int(os.environ.get("SWEEP_LEASE_TTL_SEC", "120"))
    DISPATCH_CONCURRENCY = int(os.environ.get("DISPATCH_CONCURRENCY", "10"))

    # --- Logging ---
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

settings = Settings()
