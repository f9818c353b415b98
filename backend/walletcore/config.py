from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    DATABASE_URL: str
    REDIS_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    LOG_LEVEL: str = "INFO"

    USDT_ASSET: str = "USDT"

    # Copy trading
    COPY_TRADE_ENABLED: bool = True
    COPY_TRADE_TICK_ENABLED: bool = False
    COPY_TRADE_TICK_SECONDS: int = 300
    CLAIM_WINDOW_HOURS: int = 24

    # Payment gateway (payouts for external withdrawals)
    GATEWAY_BASE_URL: str = "https://api.plisio.net/api/v1"
    GATEWAY_API_KEY: str = ""
    GATEWAY_TIMEOUT: float = 15.0

    # Admin withdrawal actions, per admin per window
    ADMIN_RATE_LIMIT: int = 30
    ADMIN_RATE_WINDOW_SECONDS: int = 60

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v):
        """Convert postgresql:// to postgresql+asyncpg:// for async support"""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

settings = Settings()
