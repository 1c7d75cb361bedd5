"""
Распределение оплаты тарифа по игровым пулам и ежедневный "дрип".

Казначейская часть оплаты делится по весам игр. Daily-аллокации отдают в пул
не больше daily_amount в сутки, последний день добирает остаток, чтобы сумма
всех дрипов совпала с total_amount до последней единицы. Lump-аллокации (колесо)
сразу уходят в джекпот-хранилище. Невыданный к сроку остаток уходит в unclaimed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vault.config import settings
from vault.exceptions import RoundingOverflow, VaultError
from vault.models.jackpot_vault import JackpotVault
from vault.models.ledger_entry import Currency, Direction, EntryType
from vault.models.pool_allocation import PoolAllocation
from vault.models.transactions import Transaction
from vault.models.unclaimed_fund import UnclaimedFund
from vault.models.users import User
from vault.services import ledger
from vault.services.locks import account_locks, allocation_locks
from vault.services.tiers import tier_resolver
from vault.utils.clock import as_utc, utcnow, utctoday
from vault.utils.formatting import quantize, truncate

logger = logging.getLogger(__name__)

MINIMUM_POOL_SEED = Decimal("1.00")


def pool_account(tier_name: str, game: str) -> str:
    return f"pool:{tier_name.upper()}:{game}"


def jackpot_account(tier_name: str) -> str:
    return f"jackpot:{tier_name.upper()}"


def unclaimed_account(destination: str) -> str:
    return f"unclaimed:{destination}"


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


@dataclass
class DripResult:
    allocation_id: str
    status: str  # released | duplicate | closed | inactive
    released: Decimal = Decimal("0")
    unclaimed: Decimal = Decimal("0")
    entry_id: str | None = None


@dataclass
class TierPoolStatus:
    tier_name: str
    active_subscribers: int
    daily_unit: Decimal
    daily_total_pool: Decimal
    seeded: bool
    released: dict[str, Decimal] = field(default_factory=dict)
    pool_balances: dict[str, Decimal] = field(default_factory=dict)
    jackpot_vault: Decimal = Decimal("0")


def split_amount(total, weights: dict[str, Decimal]) -> dict[str, Decimal]:
    """Доли усечены до точности валюты, остаток округления отдаём игре с наибольшим весом."""
    total = quantize(total)
    weight_sum = sum(weights.values())
    if weight_sum <= 0:
        raise VaultError("Веса пулов не заданы")

    parts = {game: truncate(total * weight / weight_sum) for game, weight in weights.items()}
    residue = total - sum(parts.values())
    if residue:
        heaviest = max(weights, key=lambda g: weights[g])
        parts[heaviest] += residue
    return parts


async def add_to_jackpot_vault(session: AsyncSession, tier_name: str, amount, day: date | None = None) -> JackpotVault:
    key = month_key(day or utctoday())
    result = await session.execute(
        select(JackpotVault)
        .where(JackpotVault.tier_name == tier_name, JackpotVault.month_key == key)
        .with_for_update()
    )
    vault = result.scalar_one_or_none()
    if vault is None:
        vault = JackpotVault(tier_name=tier_name, month_key=key, total_balance=Decimal("0"))
        session.add(vault)
    vault.total_balance = quantize(vault.total_balance or 0) + quantize(amount)
    await session.flush()
    return vault


async def jackpot_balance(session: AsyncSession, tier_name: str, day: date | None = None) -> Decimal:
    result = await session.execute(
        select(JackpotVault.total_balance)
        .where(JackpotVault.tier_name == tier_name.upper(), JackpotVault.month_key == month_key(day or utctoday()))
    )
    value = result.scalar_one_or_none()
    return quantize(value or 0)


class AllocationService:

    @staticmethod
    async def create_allocations(session: AsyncSession, transaction: Transaction, now: datetime | None = None,
                                 total_days: int | None = None,
                                 weights: dict[str, Decimal] | None = None) -> list[PoolAllocation]:
        """
        Создаёт по аллокации на каждую игру тарифа. Без commit: вызывается внутри
        оплаты подписки, которая держит блокировку джекпот-счёта тарифа.
        """
        now = as_utc(now or utcnow())
        total_days = total_days or settings.drip_days
        weights = weights or settings.pool_split
        tier_name = transaction.tier_name.upper()
        deposit_day = now.date()
        expiry_date = deposit_day + timedelta(days=total_days)

        allocations = []
        for game, amount in split_amount(transaction.treasury_amount, weights).items():
            lump = game in settings.lump_games
            allocation = PoolAllocation(
                transaction_id=transaction.id,
                tier_name=tier_name,
                game=game,
                total_amount=amount,
                daily_amount=Decimal("0") if lump else truncate(amount / total_days),
                total_days=total_days,
                days_released=0,
                amount_released=Decimal("0"),
                drip_type="lump" if lump else "daily",
                deposit_date=now,
                expiry_date=expiry_date,
                active=True,
            )
            session.add(allocation)
            await session.flush()

            if lump:
                await AllocationService._release_lump(session, allocation, deposit_day)
            allocations.append(allocation)

            logger.info(
                "Аллокация %s: %s %s -> %s USDT (%s, %s/день)",
                allocation.id, tier_name, game, amount, allocation.drip_type, allocation.daily_amount,
            )
        return allocations

    @staticmethod
    async def _release_lump(session: AsyncSession, allocation: PoolAllocation, day: date):
        amount = quantize(allocation.total_amount)
        if amount > 0:
            await add_to_jackpot_vault(session, allocation.tier_name, amount, day)
            await ledger.post_entry(
                session, jackpot_account(allocation.tier_name), EntryType.POOL_DRIP, Direction.CREDIT,
                amount, Currency.USDT, game=allocation.game,
                reference_id=f"{allocation.id}:{day.isoformat()}", tier_at_time=allocation.tier_name,
                note=f"Единовременное зачисление {allocation.game} в джекпот {month_key(day)}",
            )
        allocation.amount_released = amount
        allocation.days_released = 1
        allocation.last_drip_date = day
        allocation.active = False

    @staticmethod
    async def run_drip_cycle(session: AsyncSession, allocation, today: date | None = None) -> DripResult:
        """
        Один шаг дрипа для одной аллокации. Идемпотентен по (аллокация, дата):
        повторный запуск за ту же или более раннюю дату ничего не делает.
        """
        allocation_id = getattr(allocation, "id", allocation)
        today = today or utctoday()

        async with allocation_locks.hold(allocation_id):
            try:
                query = await session.execute(
                    select(PoolAllocation)
                    .where(PoolAllocation.id == allocation_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                alloc = query.scalar_one_or_none()
                if alloc is None:
                    raise VaultError(f"Аллокация {allocation_id} не найдена")

                # счета пула и unclaimed держим до commit, порядок: аллокация -> счета
                accounts = (pool_account(alloc.tier_name, alloc.game), unclaimed_account(settings.unclaimed_destination))
                async with account_locks.hold(*accounts):
                    result = await AllocationService._drip_locked(session, alloc, today)
                    await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result

    @staticmethod
    async def _drip_locked(session: AsyncSession, alloc: PoolAllocation, today: date) -> DripResult:
        # ключ идемпотентности: (аллокация, дата); даты раньше последнего дрипа не догоняем
        reference_id = f"{alloc.id}:{today.isoformat()}"
        if alloc.last_drip_date is not None and today <= alloc.last_drip_date:
            logger.debug("Дрип %s за %s уже был или дата в прошлом (последний %s)", alloc.id, today, alloc.last_drip_date)
            return DripResult(alloc.id, "duplicate")
        pool = pool_account(alloc.tier_name, alloc.game)
        if await ledger.find_by_reference(session, pool, reference_id) is not None:
            logger.debug("Дрип %s за %s уже записан в леджер", alloc.id, today)
            return DripResult(alloc.id, "duplicate")
        if not alloc.active:
            return DripResult(alloc.id, "inactive")

        total = quantize(alloc.total_amount)
        released = quantize(alloc.amount_released)
        remaining = total - released

        if today > alloc.expiry_date or remaining <= 0:
            return await AllocationService._close(session, alloc)

        release = min(quantize(alloc.daily_amount), remaining)
        if alloc.days_released + 1 >= alloc.total_days:
            # последний день по графику добирает остаток округления
            release = remaining
        if release > remaining:
            raise RoundingOverflow(f"Дрип {release} больше остатка {remaining} у {alloc.id}")

        entry = None
        if release > 0:
            entry = await ledger.post_entry(
                session, pool, EntryType.POOL_DRIP, Direction.CREDIT,
                release, Currency.USDT, game=alloc.game, reference_id=reference_id,
                tier_at_time=alloc.tier_name, note=f"Дрип {alloc.days_released + 1}/{alloc.total_days}",
            )

        alloc.days_released += 1
        alloc.amount_released = released + release
        alloc.last_drip_date = today
        if alloc.amount_released >= total:
            alloc.active = False

        logger.info(
            "Дрип %s %s/%s: +%s USDT (%s/%s)",
            alloc.id, alloc.tier_name, alloc.game, release, alloc.amount_released, total,
        )
        return DripResult(alloc.id, "released", released=release, entry_id=entry.id if entry else None)

    @staticmethod
    async def _close(session: AsyncSession, alloc: PoolAllocation) -> DripResult:
        unclaimed = quantize(alloc.total_amount) - quantize(alloc.amount_released)
        alloc.active = False

        if unclaimed > 0 and alloc.drip_type == "daily":
            destination = settings.unclaimed_destination
            session.add(UnclaimedFund(
                allocation_id=alloc.id,
                tier_name=alloc.tier_name,
                game=alloc.game,
                amount=unclaimed,
                destination=destination,
            ))
            await ledger.post_entry(
                session, unclaimed_account(destination), EntryType.ADJUSTMENT, Direction.CREDIT,
                unclaimed, Currency.USDT, game=alloc.game, reference_id=alloc.id, tier_at_time=alloc.tier_name,
                note=f"Невыданный остаток аллокации {alloc.id}",
            )
            logger.info("Аллокация %s закрыта, %s USDT -> %s", alloc.id, unclaimed, destination)
        else:
            unclaimed = Decimal("0")
            logger.info("Аллокация %s закрыта без остатка", alloc.id)

        await session.flush()
        return DripResult(alloc.id, "closed", unclaimed=unclaimed)

    @staticmethod
    async def run_daily_drip(session_factory: async_sessionmaker, today: date | None = None,
                             retries: int | None = None) -> list[DripResult]:
        """Дрип по всем активным аллокациям, каждая в своей транзакции."""
        today = today or utctoday()
        retries = settings.drip_retry_attempts if retries is None else retries

        async with session_factory() as session:
            ids = (await session.execute(
                select(PoolAllocation.id).where(PoolAllocation.active.is_(True)).order_by(PoolAllocation.created_at)
            )).scalars().all()

        results = []
        for allocation_id in ids:
            for attempt in range(1, retries + 2):
                try:
                    async with session_factory() as session:
                        results.append(await AllocationService.run_drip_cycle(session, allocation_id, today))
                    break
                except OperationalError:
                    if attempt > retries:
                        logger.exception("Дрип %s не прошёл после %s попыток", allocation_id, attempt)
                        break
                    logger.warning("Временная ошибка БД на дрипе %s, повтор %s", allocation_id, attempt)
                    await asyncio.sleep(0.5 * attempt)
                except Exception:
                    # одна сломанная аллокация не должна останавливать остальные
                    logger.exception("Ошибка дрипа аллокации %s", allocation_id)
                    break

        released = sum((r.released for r in results), Decimal("0"))
        closed = sum(1 for r in results if r.status == "closed")
        logger.info("Daily drip %s: выдано %s USDT, аллокаций %s, закрыто %s", today, released, len(ids), closed)
        return results

    @staticmethod
    async def get_unclaimed(session: AsyncSession, allocation_id: str) -> UnclaimedFund | None:
        result = await session.execute(select(UnclaimedFund).where(UnclaimedFund.allocation_id == allocation_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_pool_status(session: AsyncSession, tier_name: str, now: datetime | None = None) -> TierPoolStatus:
        now = as_utc(now or utcnow())
        tier_name = tier_name.upper()
        config = await tier_resolver.resolve(session, tier_name)

        subscribers = (await session.execute(
            select(func.count(User.id)).where(User.tier == tier_name, User.subscription_expiry > now)
        )).scalar_one()

        daily_pool = subscribers * config.daily_unit
        status = TierPoolStatus(
            tier_name=tier_name,
            active_subscribers=subscribers,
            daily_unit=config.daily_unit,
            daily_total_pool=max(daily_pool, MINIMUM_POOL_SEED),
            seeded=daily_pool < MINIMUM_POOL_SEED,
        )

        rows = await session.execute(
            select(PoolAllocation.game, func.coalesce(func.sum(PoolAllocation.amount_released), 0))
            .where(PoolAllocation.tier_name == tier_name)
            .group_by(PoolAllocation.game)
        )
        for game, amount in rows.all():
            status.released[game] = quantize(amount)
            if game not in settings.lump_games:
                status.pool_balances[game] = await ledger.current_balance(
                    session, pool_account(tier_name, game), Currency.USDT
                )

        status.jackpot_vault = await jackpot_balance(session, tier_name, now.date())
        return status
