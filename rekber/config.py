import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production

    # Server
    rekber_host: str = "0.0.0.0"
    rekber_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/rekber.db"
    db_lock_timeout_ms: int = 5000  # Max wait for a row lock before failing with 503
    db_pool_timeout_seconds: int = 10

    # Auth
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7 days

    # Fees
    platform_fee_pct: float = 0.02  # 2% app fee
    gateway_fee_pct: float = 0.015  # 1.5% payment gateway fee
    payment_expiry_hours: int = 24

    # Duitku payment gateway
    duitku_merchant_code: str = ""
    duitku_merchant_secret_key: str = ""
    duitku_payment_base_url: str = "https://sandbox.duitku.com/web/merchant/payment"
    duitku_callback_url: str = "http://localhost:8000/api/v1/transactions/payment/callback"
    duitku_payment_methods: str = "duitku_qris,duitku_va,duitku_ewallet,duitku_retail"

    # Telegram notifications (log-only when no token is configured)
    telegram_bot_token: str = ""
    telegram_api_base_url: str = "https://api.telegram.org"
    telegram_timeout_seconds: int = 10

    # Arbitration chat
    chat_history_limit: int = 50
    chat_max_connections: int = 1000

    # Background sweep for unpaid transactions past their due date
    expiry_sweep_interval_seconds: int = 300

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def payment_methods(self) -> set[str]:
        return {m.strip() for m in self.duitku_payment_methods.split(",") if m.strip()}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("rekber.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
    "change-me-to-a-random-64-char-string",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if is_prod:
        if not cfg.duitku_merchant_code or not cfg.duitku_merchant_secret_key:
            raise RuntimeError(
                "FATAL: DUITKU_MERCHANT_CODE and DUITKU_MERCHANT_SECRET_KEY must be set in production."
            )
        if cfg.duitku_merchant_secret_key == cfg.jwt_secret_key:
            raise RuntimeError(
                "FATAL: DUITKU_MERCHANT_SECRET_KEY must be different from JWT_SECRET_KEY in production."
            )
    elif not cfg.duitku_merchant_secret_key:
        _logger.warning(
            "DUITKU_MERCHANT_SECRET_KEY is not set; payment callbacks will be rejected until it is configured."
        )


validate_security_posture(settings)
