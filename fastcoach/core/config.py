"""
Centralised engine settings loaded from environment variables / .env file.
Everything has a development default; only the FCM credentials are required,
and only when the FCM delivery backend is selected.
"""
import os
import sys
from dotenv import load_dotenv

load_dotenv()


class MissingSettingError(RuntimeError):
    """A setting needed by the selected backend is not configured."""


def _require(key: str) -> str:
    """Read env var or fail with a clear error message."""
    value = os.getenv(key, "").strip()
    if not value:
        print(
            f"\n❌  MISSING REQUIRED ENV VAR: '{key}'\n"
            f"    Set this in your environment or .env file.\n",
            file=sys.stderr,
        )
        raise MissingSettingError(key)
    return value


def _flag(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in ("1", "true", "yes", "on")


class _Settings:
    # ── Local calendar ───────────────────────────────────────────────────────
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")

    # ── Persisted state ──────────────────────────────────────────────────────
    STATE_BACKEND: str = os.getenv("STATE_BACKEND", "memory")   # memory|mongo
    MONGO_URI: str     = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB_NAME: str = os.getenv("MONGO_DB_NAME", "fastcoach")

    # ── Delivery ─────────────────────────────────────────────────────────────
    DELIVERY_BACKEND: str = os.getenv("DELIVERY_BACKEND", "memory")  # memory|fcm
    FCM_DEVICE_TOKEN: str = os.getenv("FCM_DEVICE_TOKEN", "")

    # ── Quiet hours used until the user saves their own ──────────────────────
    QUIET_HOURS_START: int    = int(os.getenv("QUIET_HOURS_START", "22"))
    QUIET_HOURS_END: int      = int(os.getenv("QUIET_HOURS_END", "6"))
    QUIET_HOURS_ENABLED: bool = _flag("QUIET_HOURS_ENABLED", "true")

    # ── Housekeeping jobs ────────────────────────────────────────────────────
    DAILY_COUNT_RETENTION_DAYS: int = int(os.getenv("DAILY_COUNT_RETENTION_DAYS", "7"))
    PRUNE_HOUR: int                 = int(os.getenv("PRUNE_HOUR", "0"))
    PRUNE_MINUTE: int               = int(os.getenv("PRUNE_MINUTE", "5"))
    SETTINGS_REFRESH_MINUTES: int   = int(os.getenv("SETTINGS_REFRESH_MINUTES", "15"))

    @property
    def FIREBASE_SERVICE_ACCOUNT_PATH(self) -> str:
        # Path to Firebase service-account JSON
        return _require("FIREBASE_CREDENTIALS_PATH")


settings = _Settings()
