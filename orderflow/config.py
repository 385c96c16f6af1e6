import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv


@dataclass
class AppConfig:
    database_url: str
    secret_key: str
    log_level: str
    app_base_url: str
    currency: str
    payment_provider: str = "paymongo"
    paymongo_secret_key: str = ""
    paymongo_webhook_secret: str = ""
    xendit_secret_key: str = ""
    xendit_callback_token: str = ""
    system_actor_id: str = "system"
    checkout_session_ttl_hours: int = 24
    invoice_rate_limit: int = 5
    invoice_rate_window_minutes: int = 15
    invoice_wait_seconds: float = 5.0
    stuck_checkout_minutes: int = 10
    chat_session_idle_minutes: int = 10
    chat_session_ttl_minutes: int = 30
    otp_ttl_minutes: int = 10
    otp_max_attempts: int = 3
    chatwoot_base_url: str = ""
    chatwoot_api_token: str = ""

    def get_order_url(self, order_id: str) -> str:
        base = self.app_base_url.rstrip("/")
        return f"{base}/orders/{order_id}"

    def public_dict(self) -> Dict[str, object]:
        data = asdict(self)
        for key in data:
            if key.upper() in SENSITIVE_KEYS and data[key]:
                data[key] = "***"
        return data


SENSITIVE_KEYS = {
    "SECRET_KEY",
    "DATABASE_URL",
    "PAYMONGO_SECRET_KEY",
    "PAYMONGO_WEBHOOK_SECRET",
    "XENDIT_SECRET_KEY",
    "XENDIT_CALLBACK_TOKEN",
    "CHATWOOT_API_TOKEN",
}
PAYMENT_PROVIDERS = {"paymongo", "xendit"}


def validate_currency(value: Optional[str]) -> str:
    v = (value or "PHP").strip().upper()
    if len(v) != 3:
        raise ValueError("Invalid currency code: expected ISO4217 length 3")
    return v


def validate_provider(value: Optional[str]) -> str:
    v = (value or "paymongo").strip().lower()
    if v not in PAYMENT_PROVIDERS:
        raise ValueError(f"Unsupported payment provider: {v}")
    return v


def _load_settings_file() -> dict:
    path = Path(__file__).resolve().parents[1] / "data" / "settings.json"
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}


def _int_setting(settings: dict, key: str, default: int) -> int:
    raw = settings.get(key) or os.getenv(key)
    if raw in (None, ""):
        return default
    return int(raw)


def load_env() -> AppConfig:
    # 非機密設定以 data/settings.json 為主，環境變數（含 .env）為後備
    load_dotenv()
    s = _load_settings_file()
    return AppConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite:///data/app.db"),
        secret_key=os.getenv("SECRET_KEY", "dev_secret"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        app_base_url=(s.get("APP_BASE_URL") or os.getenv("APP_BASE_URL") or "http://127.0.0.1:5000").rstrip("/"),
        currency=validate_currency(s.get("CURRENCY") or os.getenv("CURRENCY")),
        payment_provider=validate_provider(s.get("PAYMENT_PROVIDER") or os.getenv("PAYMENT_PROVIDER")),
        paymongo_secret_key=os.getenv("PAYMONGO_SECRET_KEY", ""),
        paymongo_webhook_secret=os.getenv("PAYMONGO_WEBHOOK_SECRET", ""),
        xendit_secret_key=os.getenv("XENDIT_SECRET_KEY", ""),
        xendit_callback_token=os.getenv("XENDIT_CALLBACK_TOKEN", ""),
        system_actor_id=s.get("SYSTEM_ACTOR_ID") or os.getenv("SYSTEM_ACTOR_ID") or "system",
        checkout_session_ttl_hours=_int_setting(s, "CHECKOUT_SESSION_TTL_HOURS", 24),
        invoice_rate_limit=_int_setting(s, "INVOICE_RATE_LIMIT", 5),
        invoice_rate_window_minutes=_int_setting(s, "INVOICE_RATE_WINDOW_MINUTES", 15),
        stuck_checkout_minutes=_int_setting(s, "STUCK_CHECKOUT_MINUTES", 10),
        chat_session_idle_minutes=_int_setting(s, "CHAT_SESSION_IDLE_MINUTES", 10),
        chat_session_ttl_minutes=_int_setting(s, "CHAT_SESSION_TTL_MINUTES", 30),
        otp_ttl_minutes=_int_setting(s, "OTP_TTL_MINUTES", 10),
        otp_max_attempts=_int_setting(s, "OTP_MAX_ATTEMPTS", 3),
        chatwoot_base_url=(s.get("CHATWOOT_BASE_URL") or os.getenv("CHATWOOT_BASE_URL") or "").rstrip("/"),
        chatwoot_api_token=os.getenv("CHATWOOT_API_TOKEN", ""),
    )
