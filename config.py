import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        auth_max_age_secs: int,
        gemini_api_key: Optional[str],
        gemini_model: str,
        ai_timeout_secs: float,
        receipt_max_bytes: int,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        mail_from: str,
        budget_alert_threshold_pct: float,
        recurring_throttle_limit: int,
        recurring_throttle_period_secs: int,
        retry_max_attempts: int,
        retry_base_delay_secs: float,
        retry_max_delay_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.auth_max_age_secs = auth_max_age_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.ai_timeout_secs = ai_timeout_secs
        self.receipt_max_bytes = receipt_max_bytes
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.mail_from = mail_from
        self.budget_alert_threshold_pct = budget_alert_threshold_pct
        self.recurring_throttle_limit = recurring_throttle_limit
        self.recurring_throttle_period_secs = recurring_throttle_period_secs
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_secs = retry_base_delay_secs
        self.retry_max_delay_secs = retry_max_delay_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINLEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_or_none(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value or None


def load_settings(**overrides: object) -> Settings:
    database_url = os.getenv("FINLEDGER_DATABASE_URL")
    if not database_url and "database_url" not in overrides:
        database_url = f"sqlite:///{_ensure_data_dir() / 'finledger.db'}"
    values: dict[str, object] = {
        "database_url": database_url,
        "timezone": os.getenv("FINLEDGER_TIMEZONE", "UTC"),
        "auth_secret": os.getenv(
            "FINLEDGER_AUTH_SECRET",
            "5d1c0f0b7e2a4a8c9c3f6e1d2b7a9f40c8e6d4b2a0f8e6c4d2b0a8f6e4c2d0b9",
        ),
        "auth_max_age_secs": int(os.getenv("FINLEDGER_AUTH_MAX_AGE_SECS", "86400")),
        "gemini_api_key": _env_or_none("FINLEDGER_GEMINI_API_KEY"),
        "gemini_model": os.getenv("FINLEDGER_GEMINI_MODEL", "gemini-2.0-flash"),
        "ai_timeout_secs": float(os.getenv("FINLEDGER_AI_TIMEOUT_SECS", "30")),
        "receipt_max_bytes": int(
            os.getenv("FINLEDGER_RECEIPT_MAX_BYTES", str(5_000_000))
        ),
        "smtp_host": _env_or_none("FINLEDGER_SMTP_HOST"),
        "smtp_port": int(os.getenv("FINLEDGER_SMTP_PORT", "587")),
        "smtp_username": _env_or_none("FINLEDGER_SMTP_USERNAME"),
        "smtp_password": _env_or_none("FINLEDGER_SMTP_PASSWORD"),
        "mail_from": os.getenv("FINLEDGER_MAIL_FROM", "finledger@localhost"),
        "budget_alert_threshold_pct": float(
            os.getenv("FINLEDGER_BUDGET_ALERT_THRESHOLD_PCT", "80")
        ),
        "recurring_throttle_limit": int(
            os.getenv("FINLEDGER_RECURRING_THROTTLE_LIMIT", "10")
        ),
        "recurring_throttle_period_secs": int(
            os.getenv("FINLEDGER_RECURRING_THROTTLE_PERIOD_SECS", "60")
        ),
        "retry_max_attempts": int(os.getenv("FINLEDGER_RETRY_MAX_ATTEMPTS", "3")),
        "retry_base_delay_secs": float(
            os.getenv("FINLEDGER_RETRY_BASE_DELAY_SECS", "0.2")
        ),
        "retry_max_delay_secs": float(
            os.getenv("FINLEDGER_RETRY_MAX_DELAY_SECS", "2")
        ),
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
