import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "JPY")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        month_label_format: str,
        default_currency: str,
        log_level: str,
        host: str,
        port: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.month_label_format = month_label_format
        self.default_currency = default_currency
        self.log_level = log_level
        self.host = host
        self.port = port


def _validated_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc
    return name


def _validated_currency(code: str) -> str:
    code = code.strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValueError(
            f"Unsupported currency: {code}. Must be one of {', '.join(SUPPORTED_CURRENCIES)}"
        )
    return code


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = _validated_timezone(os.getenv("FINANCE_TIMEZONE", "UTC"))
    month_label_format = os.getenv("FINANCE_MONTH_LABEL_FORMAT", "%b")
    default_currency = _validated_currency(
        os.getenv("FINANCE_DEFAULT_CURRENCY", "USD")
    )
    log_level = os.getenv("FINANCE_LOG_LEVEL", "INFO").upper()
    host = os.getenv("FINANCE_HOST", "0.0.0.0")
    port = int(os.getenv("FINANCE_PORT", "8000"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        month_label_format=month_label_format,
        default_currency=default_currency,
        log_level=log_level,
        host=host,
        port=port,
    )
