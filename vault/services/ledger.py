"""
Леджер: append-only журнал движений по счетам с цепочкой sha256.

Каждая запись хранит хеш предыдущей записи того же счёта, поэтому правка любой
строки задним числом ломает цепочку, и verify_chain это находит.
Баланс счёта материализован в account_balances и меняется только здесь,
в той же транзакции, что и запись.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vault.exceptions import ChainIntegrityViolation, InsufficientFunds, InvalidAmount
from vault.models.account_balance import AccountBalance
from vault.models.ledger_entry import Currency, Direction, EntryType, LedgerEntry
from vault.models.users import User
from vault.services.locks import account_locks
from vault.utils.clock import as_utc, utcnow
from vault.utils.formatting import quantize, to_decimal

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
# Версия канонической сериализации. Старые записи проверяются своей версией.
HASH_VERSION = 1


def _fmt_amount(value) -> str:
    return f"{quantize(value):f}"


def _fmt_ts(value: datetime) -> str:
    return as_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds")


def canonical_payload(*, version: int, previous_entry_hash: str, account_id: str, entry_type: str,
                      direction: str, amount, currency: str, balance_before, balance_after,
                      created_at: datetime) -> str:
    if version != 1:
        raise ValueError(f"Неизвестная версия хеша записи: {version}")
    return "|".join([
        f"v{version}",
        previous_entry_hash,
        account_id,
        entry_type,
        direction,
        _fmt_amount(amount),
        currency,
        _fmt_amount(balance_before),
        _fmt_amount(balance_after),
        _fmt_ts(created_at),
    ])


def compute_entry_hash(**fields) -> str:
    return hashlib.sha256(canonical_payload(**fields).encode("utf-8")).hexdigest()


def hash_of(entry: LedgerEntry) -> str:
    return compute_entry_hash(
        version=entry.hash_version,
        previous_entry_hash=entry.previous_entry_hash,
        account_id=entry.account_id,
        entry_type=entry.entry_type,
        direction=entry.direction,
        amount=entry.amount,
        currency=entry.currency,
        balance_before=entry.balance_before,
        balance_after=entry.balance_after,
        created_at=entry.created_at,
    )


@dataclass
class ChainVerification:
    account_id: str
    valid: bool
    total_entries: int
    broken_at: int | None = None  # позиция записи в цепочке, с 0
    entry_id: str | None = None
    reason: str | None = None
    balances: dict[str, Decimal] = field(default_factory=dict)

    def __bool__(self):
        return self.valid


async def _last_entry(session: AsyncSession, account_id: str) -> LedgerEntry | None:
    result = await session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.sequence.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _balance_row(session: AsyncSession, account_id: str, currency: str) -> AccountBalance:
    result = await session.execute(
        select(AccountBalance)
        .where(AccountBalance.account_id == account_id, AccountBalance.currency == currency)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = AccountBalance(account_id=account_id, currency=currency, balance=Decimal("0"), halted=False)
        session.add(row)
        await session.flush()
    return row


async def current_balance(session: AsyncSession, account_id: str, currency: str = Currency.USDT.value) -> Decimal:
    row = await session.get(AccountBalance, (account_id, Currency(currency).value), populate_existing=True)
    if row is None:
        return Decimal("0")
    return to_decimal(row.balance)


async def is_halted(session: AsyncSession, account_id: str) -> bool:
    result = await session.execute(
        select(AccountBalance.account_id)
        .where(AccountBalance.account_id == account_id, AccountBalance.halted.is_(True))
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def post_entry(session: AsyncSession, account_id: str, entry_type, direction, amount,
                     currency=Currency.COINS, game: str | None = None, reference_id: str | None = None,
                     note: str | None = None, tier_at_time: str | None = None,
                     now: datetime | None = None) -> LedgerEntry:
    """
    Пишет запись и двигает баланс внутри текущей транзакции сессии, без commit.
    Вызывающий код обязан держать account_locks по account_id.
    """
    entry_type = EntryType(entry_type).value
    direction = Direction(direction).value
    currency = Currency(currency).value
    amount = quantize(amount)
    if amount <= 0:
        raise InvalidAmount(f"Сумма записи должна быть больше 0, получено {amount}")

    row = await _balance_row(session, account_id, currency)
    if row.halted and direction == Direction.DEBIT.value:
        raise ChainIntegrityViolation(account_id)

    balance_before = quantize(row.balance)
    if direction == Direction.DEBIT.value:
        if amount > balance_before:
            raise InsufficientFunds(account_id, amount, balance_before)
        balance_after = balance_before - amount
    else:
        balance_after = balance_before + amount

    if tier_at_time is None:
        user = await session.get(User, account_id)
        tier_at_time = user.tier if user else None

    last = await _last_entry(session, account_id)
    previous_hash = last.entry_hash if last else GENESIS_HASH
    sequence = last.sequence + 1 if last else 1
    created_at = as_utc(now or utcnow())

    entry = LedgerEntry(
        account_id=account_id,
        sequence=sequence,
        entry_type=entry_type,
        direction=direction,
        amount=amount,
        currency=currency,
        balance_before=balance_before,
        balance_after=balance_after,
        game=game,
        reference_id=reference_id,
        tier_at_time=tier_at_time,
        note=note,
        previous_entry_hash=previous_hash,
        hash_version=HASH_VERSION,
        created_at=created_at,
    )
    entry.entry_hash = hash_of(entry)
    row.balance = balance_after

    session.add(entry)
    await session.flush()
    return entry


async def append(session: AsyncSession, account_id: str, entry_type, direction, amount,
                 currency=Currency.COINS, game: str | None = None, reference_id: str | None = None,
                 note: str | None = None, tier_at_time: str | None = None) -> LedgerEntry:
    """Отдельная запись под блокировкой счёта: либо запись + баланс, либо ничего."""
    async with account_locks.hold(account_id):
        try:
            entry = await post_entry(
                session, account_id, entry_type, direction, amount, currency,
                game=game, reference_id=reference_id, note=note, tier_at_time=tier_at_time,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(
        "Леджер %s: %s %s %s %s -> %s",
        account_id, entry.entry_type, entry.direction, entry.amount, entry.currency, entry.balance_after,
    )
    return entry


async def get_entries(session: AsyncSession, account_id: str, limit: int = 50) -> list[LedgerEntry]:
    result = await session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.sequence.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def find_by_reference(session: AsyncSession, account_id: str, reference_id: str) -> LedgerEntry | None:
    result = await session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id, LedgerEntry.reference_id == reference_id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_accounts(session: AsyncSession) -> list[str]:
    result = await session.execute(select(LedgerEntry.account_id).distinct())
    return sorted(result.scalars().all())


async def verify_chain(session: AsyncSession, account_id: str, halt_on_failure: bool = True) -> ChainVerification:
    """
    Проходит цепочку от старых записей к новым, пересчитывает хеши и арифметику,
    в конце сверяет последний balance_after с живым балансом.
    Ничего в цепочке не правит; при поломке только блокирует списания по счёту.
    """
    result = await session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.sequence.asc())
        .execution_options(populate_existing=True)
    )
    entries = list(result.scalars().all())
    total = len(entries)

    def broken(position: int, reason: str) -> ChainVerification:
        entry = entries[position] if 0 <= position < total else None
        return ChainVerification(
            account_id=account_id, valid=False, total_entries=total,
            broken_at=position, entry_id=entry.id if entry else None, reason=reason,
        )

    verdict = None
    previous_hash = GENESIS_HASH
    replayed: dict[str, Decimal] = {}

    for position, entry in enumerate(entries):
        amount = quantize(entry.amount)
        before = quantize(entry.balance_before)
        after = quantize(entry.balance_after)

        if entry.sequence != position + 1:
            verdict = broken(position, "sequence_gap")
        elif entry.previous_entry_hash != previous_hash:
            verdict = broken(position, "broken_link")
        elif amount <= 0 or entry.direction not in (Direction.CREDIT.value, Direction.DEBIT.value):
            verdict = broken(position, "invalid_amount")
        elif after != (before + amount if entry.direction == Direction.CREDIT.value else before - amount):
            verdict = broken(position, "balance_mismatch")
        elif before != replayed.get(entry.currency, Decimal("0")):
            verdict = broken(position, "balance_discontinuity")
        elif hash_of(entry) != entry.entry_hash:
            verdict = broken(position, "hash_mismatch")

        if verdict is not None:
            break

        previous_hash = entry.entry_hash
        replayed[entry.currency] = after

    if verdict is None:
        rows = await session.execute(
            select(AccountBalance)
            .where(AccountBalance.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        live = {row.currency: quantize(row.balance) for row in rows.scalars().all()}
        for currency in sorted(set(live) | set(replayed)):
            if live.get(currency, Decimal("0")) != replayed.get(currency, Decimal("0")):
                verdict = broken(total - 1, "live_balance_mismatch")
                break

    if verdict is None:
        return ChainVerification(account_id=account_id, valid=True, total_entries=total, balances=replayed)

    logger.critical(
        "Цепочка счёта %s повреждена: запись #%s (%s), причина %s",
        account_id, verdict.broken_at, verdict.entry_id, verdict.reason,
    )
    if halt_on_failure:
        await halt_account(session, account_id, {e.currency for e in entries})
    return verdict


async def halt_account(session: AsyncSession, account_id: str, currencies=()) -> None:
    await session.execute(
        update(AccountBalance).where(AccountBalance.account_id == account_id).values(halted=True)
    )
    for currency in currencies:
        if await session.get(AccountBalance, (account_id, currency)) is None:
            session.add(AccountBalance(account_id=account_id, currency=currency, balance=Decimal("0"), halted=True))
    await session.commit()


async def release_halt(session: AsyncSession, account_id: str) -> None:
    """Снимает блокировку после ручного аудита. Записи цепочки не трогаются."""
    await session.execute(
        update(AccountBalance).where(AccountBalance.account_id == account_id).values(halted=False)
    )
    await session.commit()
    logger.warning("Блокировка счёта %s снята вручную", account_id)
