import os
from decimal import Decimal

from pydantic import TypeAdapter, ValidationError

from .validation import CurrencyCode


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except Exception:
            return default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except Exception:
            return default

    def _env_decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip()
        try:
            return Decimal(raw or default)
        except Exception:
            return Decimal(default)

    def _env_currency(self, name: str, default: str) -> str:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return TypeAdapter(CurrencyCode).validate_python(raw)
        except ValidationError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Backend the agent replays sales to. Empty means "never online".
        self.api_base_url = (os.getenv("POS_API_BASE_URL") or "").strip().rstrip("/")
        self.sales_path = (os.getenv("POS_SALES_PATH") or "/api/pos/sales").strip()
        self.promotions_path = (os.getenv("POS_PROMOTIONS_PATH") or "/api/promotions/batch-check").strip()
        self.csrf_path = (os.getenv("POS_CSRF_PATH") or "/api/auth/csrf-token").strip()
        self.store_id = (os.getenv("POS_STORE_ID") or "").strip()
        self.store_name = (os.getenv("POS_STORE_NAME") or "ChainSync Store").strip()
        self.currency = self._env_currency("POS_CURRENCY", "USD")

        self.db_path = os.getenv("POS_DB_PATH", "pos.sqlite")
        self.receipt_dir = os.getenv("POS_RECEIPT_DIR", "receipts")

        self.request_timeout_s = self._env_float("POS_REQUEST_TIMEOUT_S", 5.0)
        self.promo_ttl_s = self._env_float("POS_PROMO_TTL_S", 60.0)
        self.promo_debounce_s = self._env_int("POS_PROMO_DEBOUNCE_MS", 100) / 1000.0
        self.csrf_ttl_s = self._env_float("POS_CSRF_TTL_S", 300.0)

        self.sync_backoff_base_s = self._env_float("POS_SYNC_BACKOFF_BASE_S", 1.0)
        self.sync_backoff_max_s = self._env_float("POS_SYNC_BACKOFF_MAX_S", 300.0)
        self.sync_escalation_attempts = self._env_int("POS_SYNC_ESCALATION_ATTEMPTS", 5)
        # Must outlive request_timeout_s, otherwise a slow send could be claimed twice.
        self.sync_lease_s = self._env_float("POS_SYNC_LEASE_S", 30.0)
        self.connectivity_probe_s = self._env_float("POS_CONNECTIVITY_PROBE_S", 10.0)

        self.tax_rate = self._env_decimal("POS_TAX_RATE", "0.085")
        self.tax_included = _truthy(os.getenv("POS_TAX_INCLUDED", ""))
        self.redeem_value = self._env_decimal("POS_REDEEM_VALUE", "0.01")


settings = Settings()
