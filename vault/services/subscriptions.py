import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.exceptions import PaymentMismatch, VaultError
from vault.models.pool_allocation import PoolAllocation
from vault.models.transactions import Transaction
from vault.models.users import User
from vault.services.allocation import AllocationService, jackpot_account
from vault.services.locks import account_locks
from vault.services.tiers import normalize_tier, tier_resolver
from vault.utils.clock import as_utc, utcnow
from vault.utils.formatting import quantize

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = Decimal("0.01")


@dataclass
class SubscriptionResult:
    transaction: Transaction
    allocations: list[PoolAllocation] = field(default_factory=list)
    created: bool = True


async def _existing(session: AsyncSession, tx_hash: str) -> SubscriptionResult | None:
    tx = (await session.execute(select(Transaction).where(Transaction.tx_hash == tx_hash))).scalar_one_or_none()
    if tx is None:
        return None
    allocations = (await session.execute(
        select(PoolAllocation).where(PoolAllocation.transaction_id == tx.id)
    )).scalars().all()
    return SubscriptionResult(transaction=tx, allocations=list(allocations), created=False)


async def process_subscription_payment(session: AsyncSession, user_id: str, tx_hash: str, tier_name: str,
                                       verified_amount, now: datetime | None = None) -> SubscriptionResult:
    """
    Подтверждённая оплата тарифа: делит сумму admin/treasury, создаёт аллокации
    пулов и повышает тариф пользователя. Повтор с тем же tx_hash возвращает
    уже созданную транзакцию.
    """
    now = as_utc(now or utcnow())
    tier_name = normalize_tier(tier_name)
    config = await tier_resolver.require(session, tier_name)

    amount = quantize(verified_amount)
    if abs(amount - config.price) > PRICE_TOLERANCE:
        raise PaymentMismatch(f"Сумма {amount} не совпадает с ценой тарифа {tier_name}: {config.price} USDT")

    existing = await _existing(session, tx_hash)
    if existing:
        logger.info("Оплата %s уже обработана (транзакция %s)", tx_hash, existing.transaction.id)
        return existing

    user = await session.get(User, user_id)
    if user is None:
        raise VaultError(f"Пользователь {user_id} не найден")

    admin_amount = quantize(amount * settings.admin_split)
    treasury_amount = amount - admin_amount

    async with account_locks.hold(jackpot_account(tier_name)):
        try:
            tx = Transaction(
                user_id=user_id,
                tx_hash=tx_hash,
                tier_name=tier_name,
                total_amount=amount,
                admin_amount=admin_amount,
                treasury_amount=treasury_amount,
            )
            session.add(tx)
            await session.flush()

            allocations = await AllocationService.create_allocations(session, tx, now=now)

            user.tier = tier_name
            user.subscription_expiry = now + timedelta(days=settings.drip_days)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(
        "Транзакция %s: %s USDT -> admin %s, treasury %s; пользователь %s теперь %s",
        tx.id, amount, admin_amount, treasury_amount, user_id, tier_name,
    )
    return SubscriptionResult(transaction=tx, allocations=allocations)


async def expire_subscriptions(session: AsyncSession, now: datetime | None = None) -> list[str]:
    """Истёкшие подписчики возвращаются на FREE: комиссия вывода и множитель тапа снова базовые."""
    now = as_utc(now or utcnow())
    try:
        result = await session.execute(
            select(User)
            .where(User.tier != "FREE", User.subscription_expiry.is_not(None), User.subscription_expiry < now)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        expired = list(result.scalars().all())
        for user in expired:
            logger.info("Подписка %s пользователя %s истекла, тариф -> FREE", user.tier, user.id)
            user.tier = "FREE"
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    return [user.id for user in expired]
