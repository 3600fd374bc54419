from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(alias="DATABASE_URL")
    app_url: str = Field("http://localhost:8000", alias="APP_URL")

    # No secret key -> mock mode (no outbound gateway calls)
    gateway_secret_key: Optional[str] = Field(None, alias="GATEWAY_SECRET_KEY")
    gateway_public_key: Optional[str] = Field(None, alias="GATEWAY_PUBLIC_KEY")
    gateway_base_url: str = Field("https://api.paystack.co", alias="GATEWAY_BASE_URL")
    gateway_webhook_secret: Optional[str] = Field(None, alias="GATEWAY_WEBHOOK_SECRET")
    gateway_enable_splits: bool = Field(False, alias="GATEWAY_ENABLE_SPLITS")
    gateway_timeout_secs: float = Field(10.0, alias="GATEWAY_TIMEOUT_SECS")

    platform_fee_percent: float = Field(3.0, alias="PLATFORM_FEE_PERCENT")
    gateway_fee_percent: float = Field(1.5, alias="GATEWAY_FEE_PERCENT")

    ticket_code_prefix: str = Field("TIX", alias="TICKET_CODE_PREFIX")
    max_tickets_per_checkout: int = Field(10, alias="MAX_TICKETS_PER_CHECKOUT")

    storage_dir: str = Field("./storage", alias="STORAGE_DIR")
    storage_public_url: Optional[str] = Field(None, alias="STORAGE_PUBLIC_URL")

    smtp_host: Optional[str] = Field(None, alias="SMTP_HOST")
    smtp_port: Optional[int] = Field(None, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(None, alias="SMTP_USER")
    smtp_password: Optional[str] = Field(None, alias="SMTP_PASSWORD")
    smtp_from: str = Field("TixPay <no-reply@tixpay.local>", alias="SMTP_FROM")
    smtp_timeout_secs: float = Field(10.0, alias="SMTP_TIMEOUT_SECS")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Pydantic v2-style config: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def mock_mode(self) -> bool:
        return not self.gateway_secret_key

    @property
    def platform_fee_rate(self) -> float:
        return self.platform_fee_percent / 100

    @property
    def gateway_fee_rate(self) -> float:
        return self.gateway_fee_percent / 100

    @property
    def success_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/checkout/success"

settings = Settings()
