import os
from decimal import Decimal, InvalidOperation
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip()
    try:
        return Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/backoffice')
        # Comma-separated list of allowed CORS origins for browser clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.log_level = (os.getenv("LOG_LEVEL") or "info").strip().lower() or "info"

        # Empty REDIS_URL disables the read cache (no-op backend).
        self.redis_url = (os.getenv("REDIS_URL") or "").strip()
        self.cache_key_prefix = (os.getenv("CACHE_KEY_PREFIX") or "backoffice").strip() or "backoffice"

        self.sale_anul_window_hours = _env_int("SALE_ANUL_WINDOW_HOURS", 24)
        self.sale_number_max_attempts = _env_int("SALE_NUMBER_MAX_ATTEMPTS", 5)

        # NUMERIC(10,3) upper bound of products.stock_qty.
        self.stock_ceiling = _env_decimal("STOCK_CEILING", "9999999.999")

        # Manual adjustment guard rails.
        self.adjust_max_stock = _env_decimal("ADJUST_MAX_STOCK", "10000")
        self.adjust_significant_pct = _env_decimal("ADJUST_SIGNIFICANT_PCT", "50")
        self.adjust_critical_pct = _env_decimal("ADJUST_CRITICAL_PCT", "100")
        self.adjust_min_note_chars = _env_int("ADJUST_MIN_NOTE_CHARS", 20)

settings = Settings()
