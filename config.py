import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    # --- Runtime ---
    ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")

    # --- Resend (email) ---
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    EMAIL_FROM_ADDRESS = os.environ.get("EMAIL_FROM_ADDRESS", "Bookings <noreply@example.com>")

    # --- Firebase Cloud Messaging (push) ---
    FIREBASE_CREDENTIALS_PATH = os.environ.get("FIREBASE_CREDENTIALS_PATH")

    # --- Stripe (payments) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # --- Timezone used for slot dates and human-readable times ---
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "UTC")

    # --- Sweep cadences ---
    REMINDER_SWEEP_MINUTES = int(os.environ.get("REMINDER_SWEEP_MINUTES", "5"))
    # The due window must cover one sweep interval, so it follows the cadence unless overridden.
    REMINDER_LOOKBACK_MINUTES = int(
        os.environ.get("REMINDER_LOOKBACK_MINUTES", str(REMINDER_SWEEP_MINUTES))
    )
    EXPIRY_SWEEP_HOUR = int(os.environ.get("EXPIRY_SWEEP_HOUR", "9"))
    WEEKLY_REPORT_DAY = os.environ.get("WEEKLY_REPORT_DAY", "mon")
    WEEKLY_REPORT_HOUR = int(os.environ.get("WEEKLY_REPORT_HOUR", "8"))
    BACKUP_HOUR = int(os.environ.get("BACKUP_HOUR", "2"))
    CLEANUP_HOUR = int(os.environ.get("CLEANUP_HOUR", "3"))

    # --- Dispatch limits ---
    DISPATCH_TIMEOUT = float(os.environ.get("DISPATCH_TIMEOUT", "10"))
    STORE_TIMEOUT = float(os.environ.get("STORE_TIMEOUT", "10"))
    SWEEP_CONCURRENCY = int(os.environ.get("SWEEP_CONCURRENCY", "10"))

    # --- Housekeeping ---
    NOTIFICATION_RETENTION_DAYS = int(os.environ.get("NOTIFICATION_RETENTION_DAYS", "30"))
    ADMIN_USER_IDS = [
        uid.strip() for uid in os.environ.get("ADMIN_USER_IDS", "").split(",") if uid.strip()
    ]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def validate(self) -> None:
        """Fail fast on missing credentials.

        Development runs with log-only channels, so only the database is required there.
        """
        from app.errors import ConfigurationError

        missing = []
        if not (self.DATABASE_URL or self.DATABASE_PUBLIC_URL):
            missing.append("DATABASE_URL")
        if self.is_production:
            required = {
                "RESEND_API_KEY": self.RESEND_API_KEY,
                "TELNYX_API_KEY": self.TELNYX_API_KEY,
                "TELNYX_FROM_NUMBER": self.TELNYX_FROM_NUMBER,
                "FIREBASE_CREDENTIALS_PATH": self.FIREBASE_CREDENTIALS_PATH,
                "STRIPE_SECRET_KEY": self.STRIPE_SECRET_KEY,
                "STRIPE_WEBHOOK_SECRET": self.STRIPE_WEBHOOK_SECRET,
            }
            missing.extend(name for name, value in required.items() if not value)
        if missing:
            raise ConfigurationError(f"missing required settings: {', '.join(missing)}")


settings = Settings()
