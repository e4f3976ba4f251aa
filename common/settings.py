import os
from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "payout-engine")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))
    cron_secret: str = os.getenv("CRON_SECRET", "")

    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "payouts")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    database_url_override: Optional[str] = os.getenv("DATABASE_URL")

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # External bank-transfer provider
    payout_api_base_url: str = os.getenv("PAYOUT_API_BASE_URL", "https://api.sparkuptech.in/api/fzep/payout")
    payout_partner_id: str = os.getenv("PAYOUT_PARTNER_ID", "")
    payout_consumer_key: str = os.getenv("PAYOUT_CONSUMER_KEY", "")
    payout_consumer_secret: str = os.getenv("PAYOUT_CONSUMER_SECRET", "")
    payout_api_timeout_seconds: float = float(os.getenv("PAYOUT_API_TIMEOUT_SECONDS", "60"))
    payout_transfer_timeout_seconds: float = float(os.getenv("PAYOUT_TRANSFER_TIMEOUT_SECONDS", "45"))
    payout_mock_mode: bool = os.getenv("USE_PAYOUT_MOCK", "false").lower() == "true"

    # Static fee table used when no scheme prices the transfer
    payout_charge_imps: Decimal = Decimal(os.getenv("PAYOUT_CHARGE_IMPS", "5"))
    payout_charge_neft: Decimal = Decimal(os.getenv("PAYOUT_CHARGE_NEFT", "3"))
    payout_verification_charge: Decimal = Decimal(os.getenv("PAYOUT_VERIFICATION_CHARGE", "2"))
    payout_min_amount: Decimal = Decimal(os.getenv("PAYOUT_MIN_AMOUNT", "100"))
    payout_max_amount: Decimal = Decimal(os.getenv("PAYOUT_MAX_AMOUNT", "200000"))
    payout_service_type: str = os.getenv("PAYOUT_SERVICE_TYPE", "payout")

    payout_duplicate_window_seconds: int = int(os.getenv("PAYOUT_DUPLICATE_WINDOW_SECONDS", "120"))

    reconcile_stale_minutes: int = int(os.getenv("RECONCILE_STALE_MINUTES", "5"))
    reconcile_auto_refund_hours: int = int(os.getenv("RECONCILE_AUTO_REFUND_HOURS", "48"))
    reconcile_batch_size: int = int(os.getenv("RECONCILE_BATCH_SIZE", "50"))
    reconcile_interval_minutes: int = int(os.getenv("RECONCILE_INTERVAL_MINUTES", "5"))

    bank_list_cache_ttl_seconds: int = int(os.getenv("BANK_LIST_CACHE_TTL_SECONDS", "86400"))

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

    def default_charge(self, transfer_mode: str) -> Decimal:
        return self.payout_charge_imps if transfer_mode == "IMPS" else self.payout_charge_neft

settings = Settings()
