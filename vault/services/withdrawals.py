import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.exceptions import InsufficientBalance, InvalidAmount, WithdrawalError
from vault.models.ledger_entry import Currency, Direction, EntryType
from vault.models.withdrawal import Withdrawal, WithdrawalStatus
from vault.models.withdrawal_batch import WithdrawalBatch
from vault.services import ledger
from vault.services.locks import account_locks
from vault.services.tiers import normalize_tier, tier_resolver
from vault.utils.clock import utcnow
from vault.utils.formatting import quantize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeQuote:
    gross_amount: Decimal
    fee_percent: Decimal
    fee_amount: Decimal
    net_amount: Decimal


def compute_fee(gross_amount, fee_percent) -> FeeQuote:
    gross = quantize(gross_amount)
    percent = Decimal(fee_percent)
    fee = quantize(gross * percent / 100)
    return FeeQuote(gross_amount=gross, fee_percent=percent, fee_amount=fee, net_amount=gross - fee)


class WithdrawalService:
    """
    Учёт выводов: комиссия, списание в леджере и группировка в батчи.
    Сами выплаты в сеть делает внешний исполнитель, он же сообщает результат.
    """

    @staticmethod
    async def quote_withdrawal(session: AsyncSession, tier_name: str, gross_amount) -> FeeQuote:
        config = await tier_resolver.resolve(session, tier_name)
        return compute_fee(gross_amount, config.withdrawal_fee_percent)

    @staticmethod
    async def create_withdrawal(session: AsyncSession, user_id: str, gross_amount, tier_at_time: str,
                                to_wallet: str, network: str = "TON",
                                currency: Currency = Currency.USDT) -> Withdrawal:
        to_wallet = (to_wallet or "").strip()
        if not to_wallet:
            raise WithdrawalError("Не указан адрес кошелька")

        gross = quantize(gross_amount)
        if gross <= 0:
            raise InvalidAmount("Сумма вывода должна быть больше 0")
        if gross < settings.min_withdrawal:
            raise WithdrawalError(f"Минимальная сумма вывода {settings.min_withdrawal} {currency.value}")

        # комиссия фиксируется по тарифу на момент заявки
        tier_at_time = normalize_tier(tier_at_time)
        quote = await WithdrawalService.quote_withdrawal(session, tier_at_time, gross)

        async with account_locks.hold(user_id):
            try:
                balance = await ledger.current_balance(session, user_id, currency)
                if gross > balance:
                    raise InsufficientBalance(user_id, gross, balance)

                withdrawal = Withdrawal(
                    user_id=user_id,
                    currency=currency.value,
                    gross_amount=quote.gross_amount,
                    fee_percent=quote.fee_percent,
                    fee_amount=quote.fee_amount,
                    net_amount=quote.net_amount,
                    to_wallet=to_wallet,
                    network=network or "TON",
                    status=WithdrawalStatus.PENDING.value,
                    tier_at_time=tier_at_time,
                )
                session.add(withdrawal)
                await session.flush()

                # списываем gross: комиссия - отдельная бухгалтерия, не дополнительное списание
                entry = await ledger.post_entry(
                    session, user_id, EntryType.WITHDRAWAL, Direction.DEBIT, quote.gross_amount, currency,
                    reference_id=withdrawal.id, tier_at_time=tier_at_time,
                    note=f"Вывод {quote.gross_amount} (комиссия {quote.fee_amount}, к выплате {quote.net_amount}) на {to_wallet} ({withdrawal.network})",
                )
                withdrawal.ledger_entry_id = entry.id
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "Заявка на вывод %s: %s %s, комиссия %s%% = %s, к выплате %s",
            withdrawal.id, user_id, quote.gross_amount, quote.fee_percent, quote.fee_amount, quote.net_amount,
        )
        return withdrawal

    @staticmethod
    async def batch_pending(session: AsyncSession) -> WithdrawalBatch | None:
        """Собирает все pending-заявки в новый батч. Нет заявок - нет батча."""
        try:
            result = await session.execute(
                select(Withdrawal)
                .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
                .order_by(Withdrawal.created_at, Withdrawal.id)
                .with_for_update()
            )
            pending = list(result.scalars().all())
            if not pending:
                return None

            batch = WithdrawalBatch(
                total_withdrawals=len(pending),
                total_gross=sum((quantize(w.gross_amount) for w in pending), Decimal("0")),
                total_fees=sum((quantize(w.fee_amount) for w in pending), Decimal("0")),
                total_net=sum((quantize(w.net_amount) for w in pending), Decimal("0")),
                status="pending",
            )
            session.add(batch)
            await session.flush()

            for w in pending:
                w.status = WithdrawalStatus.BATCHED.value
                w.batch_id = batch.id
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(
            "Батч %s: %s заявок, gross %s, комиссии %s, к выплате %s",
            batch.id, batch.total_withdrawals, batch.total_gross, batch.total_fees, batch.total_net,
        )
        return batch

    @staticmethod
    async def get_batch_withdrawals(session: AsyncSession, batch_id: str) -> list[Withdrawal]:
        result = await session.execute(
            select(Withdrawal).where(Withdrawal.batch_id == batch_id).order_by(Withdrawal.created_at, Withdrawal.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def mark_batch_result(session: AsyncSession, batch_id: str, failed_ids=(),
                                error_text: str | None = None, now: datetime | None = None) -> WithdrawalBatch:
        """
        Результат выплаты от внешнего исполнителя. Упавшие заявки помечаются failed
        по отдельности, батч при этом всё равно processed (если упали не все).
        """
        now = now or utcnow()
        failed_ids = set(failed_ids)
        try:
            batch = await session.get(WithdrawalBatch, batch_id, with_for_update=True, populate_existing=True)
            if batch is None:
                raise WithdrawalError(f"Батч {batch_id} не найден")
            if batch.status != "pending":
                raise WithdrawalError(f"Батч {batch_id} уже закрыт: {batch.status}")

            members = await WithdrawalService.get_batch_withdrawals(session, batch_id)
            unknown = failed_ids - {w.id for w in members}
            if unknown:
                raise WithdrawalError(f"Заявки не из батча {batch_id}: {', '.join(sorted(unknown))}")

            for w in members:
                if w.id in failed_ids:
                    w.status = WithdrawalStatus.FAILED.value
                    w.error_text = error_text or "payout failed"
                else:
                    w.status = WithdrawalStatus.PROCESSED.value
                    w.processed_at = now

            all_failed = bool(members) and len(failed_ids) == len(members)
            batch.status = "failed" if all_failed else "processed"
            batch.processed_at = now
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info("Батч %s: %s, неуспешных заявок %s", batch_id, batch.status, len(failed_ids))
        return batch

    @staticmethod
    async def reject_withdrawal(session: AsyncSession, withdrawal_id: str, reason: str | None = None) -> Withdrawal:
        """Отклонение pending/failed заявки: gross возвращается пользователю отдельной записью."""
        withdrawal = await session.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise WithdrawalError(f"Заявка {withdrawal_id} не найдена")

        async with account_locks.hold(withdrawal.user_id):
            try:
                withdrawal = await session.get(Withdrawal, withdrawal_id, with_for_update=True, populate_existing=True)
                if withdrawal.status not in (WithdrawalStatus.PENDING.value, WithdrawalStatus.FAILED.value):
                    raise WithdrawalError(f"Нельзя отклонить заявку в статусе {withdrawal.status}")

                await ledger.post_entry(
                    session, withdrawal.user_id, EntryType.ADJUSTMENT, Direction.CREDIT,
                    withdrawal.gross_amount, Currency(withdrawal.currency), reference_id=withdrawal.id,
                    note=f"Возврат по отклонённому выводу {withdrawal.id}" + (f": {reason}" if reason else ""),
                )
                withdrawal.status = WithdrawalStatus.REJECTED.value
                withdrawal.error_text = reason or withdrawal.error_text
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("Вывод %s отклонён, %s возвращено пользователю %s", withdrawal.id, withdrawal.gross_amount, withdrawal.user_id)
        return withdrawal
