import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict

from aiolimiter import AsyncLimiter
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.exceptions import InvalidAmount, TapRateExceeded, VaultError
from vault.models.ledger_entry import Currency, Direction, EntryType, LedgerEntry
from vault.models.users import User
from vault.services import ledger
from vault.services.allocation import jackpot_account, pool_account
from vault.services.energy import apply_passive_regen
from vault.services.locks import account_locks
from vault.services.tiers import tier_resolver
from vault.utils.formatting import quantize

logger = logging.getLogger(__name__)

# user_id -> AsyncLimiter, ёмкость = tap_rate_limit тапов за tap_rate_period секунд
tap_limiters: Dict[str, AsyncLimiter] = defaultdict(
    lambda: AsyncLimiter(settings.tap_rate_limit, settings.tap_rate_period)
)


async def check_tap_rate(user_id: str, taps: int) -> None:
    limiter = tap_limiters[user_id]
    if taps > limiter.max_rate or not limiter.has_capacity(taps):
        logger.warning("Слишком частые тапы у %s: %s за сессию", user_id, taps)
        raise TapRateExceeded(
            f"Не больше {settings.tap_rate_limit} тапов за {settings.tap_rate_period} с"
        )
    await limiter.acquire(taps)


@dataclass
class TapResult:
    taps_applied: int
    coins_earned: int
    energy_left: int
    entry: LedgerEntry | None = None


async def _transfer(session: AsyncSession, user_id: str, entry_type: EntryType, amount, currency: Currency,
                    source_account: str | None = None, game: str | None = None,
                    reference_id: str | None = None, note: str | None = None) -> LedgerEntry:
    """Зачисление пользователю; если задан source_account, та же сумма списывается с него в той же транзакции."""
    amount = quantize(amount)
    if amount <= 0:
        raise InvalidAmount(f"Сумма награды должна быть больше 0, получено {amount}")

    keys = [user_id] + ([source_account] if source_account else [])
    async with account_locks.hold(*keys):
        try:
            if source_account:
                await ledger.post_entry(
                    session, source_account, entry_type, Direction.DEBIT, amount, currency,
                    game=game, reference_id=reference_id, note=f"Выплата пользователю {user_id}",
                )
            entry = await ledger.post_entry(
                session, user_id, entry_type, Direction.CREDIT, amount, currency,
                game=game, reference_id=reference_id, note=note,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info("Награда %s: %s %s %s -> %s", entry_type.value, user_id, amount, currency.value, entry.balance_after)
    return entry


async def record_tap_session(session: AsyncSession, user_id: str, taps: int,
                             now: datetime | None = None) -> TapResult:
    """
    Тапы тратят энергию, монеты = тапы * множитель тарифа.
    Если энергии меньше, чем тапов, засчитывается только доступное.
    Сессия сверх лимита тапов в секунду отклоняется до любых изменений.
    """
    if taps <= 0:
        raise InvalidAmount("Количество тапов должно быть больше 0")
    await check_tap_rate(user_id, taps)

    async with account_locks.hold(user_id):
        try:
            user = await session.get(User, user_id, with_for_update=True, populate_existing=True)
            if user is None:
                raise VaultError(f"Пользователь {user_id} не найден")

            config = await tier_resolver.resolve(session, user.tier)
            energy = apply_passive_regen(user, config, now)
            applied = min(taps, energy)
            if applied <= 0:
                await session.commit()
                return TapResult(taps_applied=0, coins_earned=0, energy_left=energy)

            coins = applied * config.tap_multiplier
            user.energy = energy - applied
            entry = await ledger.post_entry(
                session, user_id, EntryType.TAP, Direction.CREDIT, coins, Currency.COINS,
                game="tap", note=f"{applied} тапов x{config.tap_multiplier}", tier_at_time=user.tier, now=now,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    return TapResult(taps_applied=applied, coins_earned=coins, energy_left=user.energy, entry=entry)


async def record_wheel_spin(session: AsyncSession, user_id: str, reward, spin_id: str | None = None,
                            tier_name: str | None = None) -> LedgerEntry | None:
    """Выигрыш колеса. С tier_name выплата идёт из джекпот-счёта тарифа."""
    if quantize(reward) <= 0:
        return None
    source = jackpot_account(tier_name) if tier_name else None
    return await _transfer(
        session, user_id, EntryType.WHEEL_SPIN, reward, Currency.USDT, source_account=source,
        game="wheelVault", reference_id=spin_id, note="Выигрыш колеса",
    )


async def record_prediction_payout(session: AsyncSession, user_id: str, correct: bool, reward,
                                   prediction_id: str | None = None,
                                   tier_name: str | None = None) -> LedgerEntry | None:
    # за неверный прогноз ничего не начисляем
    if not correct:
        return None
    source = pool_account(tier_name, "predictPot") if tier_name else None
    return await _transfer(
        session, user_id, EntryType.PREDICTION_PAYOUT, reward, Currency.USDT, source_account=source,
        game="predictPot", reference_id=prediction_id, note="Верный прогноз",
    )


async def record_task_reward(session: AsyncSession, user_id: str, coins: int, task_id: str | None = None) -> LedgerEntry:
    return await _transfer(
        session, user_id, EntryType.TASK_REWARD, coins, Currency.COINS,
        reference_id=task_id, note=f"Задание {task_id}" if task_id else "Задание",
    )


async def record_deposit(session: AsyncSession, user_id: str, amount, deposit_id: str,
                         network: str = "TON") -> LedgerEntry:
    """Подтверждённый депозит USDT. Повтор с тем же deposit_id возвращает первую запись."""
    existing = await ledger.find_by_reference(session, user_id, deposit_id)
    if existing is not None and existing.entry_type == EntryType.DEPOSIT.value:
        return existing
    return await _transfer(
        session, user_id, EntryType.DEPOSIT, amount, Currency.USDT,
        reference_id=deposit_id, note=f"Депозит {network}",
    )


async def pay_from_pool(session: AsyncSession, tier_name: str, game: str, user_id: str, amount,
                        entry_type: EntryType = EntryType.ADJUSTMENT, reference_id: str | None = None,
                        note: str | None = None) -> LedgerEntry:
    return await _transfer(
        session, user_id, EntryType(entry_type), amount, Currency.USDT,
        source_account=pool_account(tier_name, game), game=game, reference_id=reference_id, note=note,
    )
