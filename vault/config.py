from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    bot_token: str = ""
    db_dsn: str = "sqlite+aiosqlite:///./vault.db"
    admins: list[int] = []

    # Разделение оплаты тарифа
    admin_split: Decimal = Decimal("0.40")
    treasury_split: Decimal = Decimal("0.60")
    pool_split: dict[str, Decimal] = {
        "tapPot": Decimal("0.50"),
        "predictPot": Decimal("0.30"),
        "wheelVault": Decimal("0.20"),
    }
    lump_games: list[str] = ["wheelVault"]
    drip_days: int = 30
    unclaimed_destination: str = "admin"  # 'admin' или 'treasury'

    min_withdrawal: Decimal = Decimal("5.00")
    tier_cache_ttl_seconds: int = 60

    # Планировщик
    drip_retry_attempts: int = 3
    drip_hour_utc: int = 0
    audit_interval_hours: int = 6

    # Антифлуд для команд
    throttle_rate: int = 1
    throttle_period: int = 2

    # Лимит тапов на пользователя
    tap_rate_limit: int = 15
    tap_rate_period: int = 1

    class Config:
        env_file = ".env"


settings = Settings()
