import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "mysql+pymysql://root:@localhost:3306/RideBooking"
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: str = ""
    payment_currency: str = "INR"
    payment_timeout_minutes: int = 15
    advance_percent: int = 40
    # 0 disables the background sweep loop
    sweep_interval_seconds: int = 60
    openroute_api_key: Optional[str] = None
    notify_webhook_url: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5500", "http://127.0.0.1:5500"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            payment_currency=os.getenv("PAYMENT_CURRENCY", defaults.payment_currency),
            payment_timeout_minutes=int(os.getenv("PAYMENT_TIMEOUT_MINUTES", str(defaults.payment_timeout_minutes))),
            advance_percent=int(os.getenv("ADVANCE_PERCENT", str(defaults.advance_percent))),
            sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", str(defaults.sweep_interval_seconds))),
            openroute_api_key=os.getenv("OPENROUTE_API_KEY") or None,
            notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL") or None,
            cors_origins=_csv(os.getenv("CORS_ORIGINS", "")) or defaults.cors_origins,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )
