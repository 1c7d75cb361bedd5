import logging
import time
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.exceptions import UnknownTier
from vault.models.tiers import Tier

logger = logging.getLogger(__name__)

TIER_ORDER = ["FREE", "BRONZE", "SILVER", "GOLD"]


@dataclass(frozen=True)
class TierConfig:
    name: str
    price: Decimal = Decimal("0")
    daily_unit: Decimal = Decimal("0")
    tap_multiplier: int = 1
    energy_refill_rate_ms: int = 2000
    free_refills_per_day: int = 0
    refill_cooldown_ms: int | None = None
    withdrawal_fee_percent: Decimal = Decimal("0")

    @classmethod
    def from_row(cls, row: Tier) -> "TierConfig":
        return cls(
            name=row.name,
            price=Decimal(row.price or 0),
            daily_unit=Decimal(row.daily_unit or 0),
            tap_multiplier=row.tap_multiplier or 1,
            energy_refill_rate_ms=row.energy_refill_rate_ms or 2000,
            free_refills_per_day=row.free_refills_per_day or 0,
            refill_cooldown_ms=row.refill_cooldown_ms,
            withdrawal_fee_percent=Decimal(row.withdrawal_fee_percent or 0),
        )


DEFAULT_TIERS = {
    "FREE": TierConfig("FREE", withdrawal_fee_percent=Decimal("5")),
    "BRONZE": TierConfig(
        "BRONZE", price=Decimal("5.00"), daily_unit=Decimal("0.10"), tap_multiplier=2,
        energy_refill_rate_ms=1500, free_refills_per_day=1, refill_cooldown_ms=24 * 3600 * 1000,
        withdrawal_fee_percent=Decimal("3"),
    ),
    "SILVER": TierConfig(
        "SILVER", price=Decimal("15.00"), daily_unit=Decimal("0.30"), tap_multiplier=3,
        energy_refill_rate_ms=1000, free_refills_per_day=2, refill_cooldown_ms=12 * 3600 * 1000,
        withdrawal_fee_percent=Decimal("2"),
    ),
    "GOLD": TierConfig(
        "GOLD", price=Decimal("50.00"), daily_unit=Decimal("1.00"), tap_multiplier=5,
        energy_refill_rate_ms=500, free_refills_per_day=4, refill_cooldown_ms=6 * 3600 * 1000,
        withdrawal_fee_percent=Decimal("1"),
    ),
}


def normalize_tier(name: str | None) -> str:
    return (name or "FREE").strip().upper()


def is_tier_sufficient(user_tier: str, required_tier: str) -> bool:
    user_tier, required_tier = normalize_tier(user_tier), normalize_tier(required_tier)
    if user_tier not in TIER_ORDER or required_tier not in TIER_ORDER:
        return False
    return TIER_ORDER.index(user_tier) >= TIER_ORDER.index(required_tier)


class TierConfigResolver:
    """
    Кэш тарифов из таблицы tiers.
    Перечитывается раз в ttl секунд; неизвестный тариф -> параметры FREE.
    """

    def __init__(self, ttl_seconds: int | None = None):
        self.ttl_seconds = settings.tier_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._cache: dict[str, TierConfig] = {}
        self._loaded_at = 0.0

    def invalidate(self):
        self._cache = {}
        self._loaded_at = 0.0

    async def load(self, session: AsyncSession) -> dict[str, TierConfig]:
        result = await session.execute(select(Tier))
        rows = result.scalars().all()
        self._cache = {row.name.upper(): TierConfig.from_row(row) for row in rows}
        self._loaded_at = time.monotonic()
        logger.debug("Загружено тарифов: %s", len(self._cache))
        return self._cache

    async def resolve(self, session: AsyncSession, tier_name: str | None) -> TierConfig:
        expired = time.monotonic() - self._loaded_at > self.ttl_seconds
        if expired or not self._cache:
            await self.load(session)

        name = normalize_tier(tier_name)
        if name in self._cache:
            return self._cache[name]
        return DEFAULT_TIERS.get(name, DEFAULT_TIERS["FREE"])

    async def require(self, session: AsyncSession, tier_name: str) -> TierConfig:
        """Как resolve, но для оплаты: тариф обязан существовать и иметь цену."""
        config = await self.resolve(session, tier_name)
        if normalize_tier(tier_name) != config.name.upper() or config.price <= 0:
            raise UnknownTier(f"Неизвестный тариф: {tier_name}")
        return config


async def seed_default_tiers(session: AsyncSession) -> int:
    """Заполняет каталог тарифов значениями по умолчанию (только отсутствующие)."""
    result = await session.execute(select(Tier.name))
    existing = {name.upper() for name in result.scalars().all()}

    added = 0
    for name, config in DEFAULT_TIERS.items():
        if name in existing:
            continue
        session.add(Tier(
            name=name,
            price=config.price,
            daily_unit=config.daily_unit,
            tap_multiplier=config.tap_multiplier,
            energy_refill_rate_ms=config.energy_refill_rate_ms,
            free_refills_per_day=config.free_refills_per_day,
            refill_cooldown_ms=config.refill_cooldown_ms,
            withdrawal_fee_percent=config.withdrawal_fee_percent,
        ))
        added += 1

    await session.commit()
    return added


tier_resolver = TierConfigResolver()
