"""
Энергия для тапалки.

Энергия не хранится "живой": в БД лежат сохранённое значение и момент последнего
пополнения, текущее значение считается от wall-clock "сейчас".
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from vault.exceptions import RefillUnavailable
from vault.models.users import User
from vault.services.tiers import TierConfig
from vault.utils.clock import as_utc, utcnow
from vault.utils.formatting import format_duration

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class RefillCooldown:
    can_refill: bool
    remaining_ms: int
    total_ms: int
    progress: float


def _elapsed_ms(since: datetime, now: datetime) -> int:
    return int((as_utc(now) - as_utc(since)).total_seconds() * 1000)


def current_energy(stored: int, max_energy: int, last_refill: datetime, tier_config: TierConfig,
                   now: datetime | None = None) -> int:
    now = now or utcnow()
    elapsed = max(0, _elapsed_ms(last_refill, now))
    regen = elapsed // tier_config.energy_refill_rate_ms
    return min(max_energy, max(0, stored) + regen)


def passive_regen(stored: int, max_energy: int, last_refill: datetime, tier_config: TierConfig,
                  now: datetime | None = None) -> tuple[int, datetime]:
    """
    Возвращает (энергия, новый last_refill).
    last_refill сдвигается ровно на израсходованные тики, остаток тика не теряется.
    """
    now = now or utcnow()
    last_refill = as_utc(last_refill)
    rate = tier_config.energy_refill_rate_ms
    ticks = max(0, _elapsed_ms(last_refill, now)) // rate

    energy = min(max_energy, max(0, stored) + ticks)
    if energy >= max_energy:
        # на полном баке таймер не копим
        return energy, as_utc(now)
    return energy, last_refill + timedelta(milliseconds=ticks * rate)


def time_until_full(current: int, max_energy: int, tier_config: TierConfig) -> str:
    if current >= max_energy:
        return "Full!"
    remaining = max_energy - current
    return format_duration(remaining * tier_config.energy_refill_rate_ms / 1000)


def energy_percentage(energy: int, max_energy: int) -> float:
    if max_energy <= 0:
        return 0.0
    return max(0.0, min(100.0, energy / max_energy * 100))


def can_use_free_refill(last_free_refill: datetime | None, now: datetime | None = None) -> bool:
    if last_free_refill is None:
        return True
    return _elapsed_ms(last_free_refill, now or utcnow()) >= DAY_MS


def time_until_free_refill(last_free_refill: datetime | None, now: datetime | None = None) -> str:
    if last_free_refill is None:
        return "Available now!"
    diff_ms = DAY_MS - _elapsed_ms(last_free_refill, now or utcnow())
    if diff_ms <= 0:
        return "Available now!"
    hours, rest = divmod(diff_ms // 1000, 3600)
    return f"{hours}h {rest // 60}m"


def get_refill_cooldown_remaining(last_free_refill: datetime | None, tier_config: TierConfig,
                                  now: datetime | None = None) -> RefillCooldown:
    # без кулдауна у тарифа действует только суточный бесплатный рефилл
    total_ms = tier_config.refill_cooldown_ms or DAY_MS
    if last_free_refill is None:
        return RefillCooldown(can_refill=True, remaining_ms=0, total_ms=total_ms, progress=1.0)

    elapsed = max(0, _elapsed_ms(last_free_refill, now or utcnow()))
    remaining = max(0, total_ms - elapsed)
    progress = min(1.0, max(0.0, elapsed / total_ms))
    return RefillCooldown(
        can_refill=remaining == 0,
        remaining_ms=remaining,
        total_ms=total_ms,
        progress=progress,
    )


def apply_passive_regen(user: User, tier_config: TierConfig, now: datetime | None = None) -> int:
    energy, refill_at = passive_regen(user.energy, user.max_energy, user.last_energy_refill, tier_config, now)
    if energy != user.energy or refill_at != as_utc(user.last_energy_refill):
        user.energy = energy
        user.last_energy_refill = refill_at
    return energy


async def apply_full_tank_refill(session: AsyncSession, user: User, tier_config: TierConfig,
                                 now: datetime | None = None) -> User:
    now = now or utcnow()
    cooldown = get_refill_cooldown_remaining(user.last_free_refill, tier_config, now)
    if not cooldown.can_refill:
        raise RefillUnavailable(
            f"Следующий полный бак через {format_duration(cooldown.remaining_ms / 1000)}",
            remaining_ms=cooldown.remaining_ms,
        )

    user.energy = user.max_energy
    user.last_energy_refill = now
    user.last_free_refill = now
    await session.commit()
    return user
