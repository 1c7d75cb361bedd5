import asyncio
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from vault.exceptions import ChainIntegrityViolation, InsufficientFunds, InvalidAmount
from vault.models.account_balance import AccountBalance
from vault.models.ledger_entry import Currency, Direction, EntryType, LedgerEntry
from vault.services import ledger


async def _entries(session, account_id):
    result = await session.execute(
        select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.sequence)
    )
    return list(result.scalars().all())


async def test_chain_valid_and_balance_matches_last_entry(session, make_user):
    user_id = (await make_user()).id
    moves = [
        (EntryType.DEPOSIT, Direction.CREDIT, "10"),
        (EntryType.WHEEL_SPIN, Direction.CREDIT, "2.5"),
        (EntryType.WITHDRAWAL, Direction.DEBIT, "7.25"),
        (EntryType.TASK_REWARD, Direction.CREDIT, "0.0001"),
    ]
    last = None
    for entry_type, direction, amount in moves:
        last = await ledger.append(session, user_id, entry_type, direction, Decimal(amount), Currency.USDT)

    verdict = await ledger.verify_chain(session, user_id)
    assert verdict.valid
    assert verdict.total_entries == 4
    assert await ledger.current_balance(session, user_id, Currency.USDT) == Decimal(last.balance_after)
    assert Decimal(last.balance_after) == Decimal("5.2501")


async def test_first_entry_links_to_genesis(session, make_user):
    user_id = (await make_user()).id
    first = await ledger.append(session, user_id, EntryType.DEPOSIT, Direction.CREDIT, Decimal("1"), Currency.USDT)
    second = await ledger.append(session, user_id, EntryType.DEPOSIT, Direction.CREDIT, Decimal("1"), Currency.USDT)

    assert first.previous_entry_hash == ledger.GENESIS_HASH
    assert second.previous_entry_hash == first.entry_hash
    assert first.sequence == 1 and second.sequence == 2
    assert first.tier_at_time == "FREE"


async def test_debit_over_balance_leaves_no_trace(session, make_user, fund):
    user_id = (await make_user()).id
    await fund(user_id, "3")

    with pytest.raises(InsufficientFunds):
        await ledger.append(session, user_id, EntryType.WITHDRAWAL, Direction.DEBIT, Decimal("3.0001"), Currency.USDT)

    assert len(await _entries(session, user_id)) == 1
    assert await ledger.current_balance(session, user_id, Currency.USDT) == Decimal("3")
    assert (await ledger.verify_chain(session, user_id)).valid


async def test_non_positive_amount_rejected(session, make_user):
    user_id = (await make_user()).id
    with pytest.raises(InvalidAmount):
        await ledger.append(session, user_id, EntryType.TAP, Direction.CREDIT, 0)
    assert await _entries(session, user_id) == []


async def test_balances_are_per_currency(session, make_user, fund):
    user_id = (await make_user()).id
    await fund(user_id, "4")
    await fund(user_id, "150", Currency.COINS)

    with pytest.raises(InsufficientFunds):
        await ledger.append(session, user_id, EntryType.WITHDRAWAL, Direction.DEBIT, Decimal("5"), Currency.USDT)

    verdict = await ledger.verify_chain(session, user_id)
    assert verdict.valid
    assert verdict.balances == {"USDT": Decimal("4"), "COINS": Decimal("150")}


async def test_tampered_amount_detected_at_position(session, make_user, fund):
    user_id = (await make_user()).id
    for amount in ("1", "2", "3", "4"):
        await fund(user_id, amount)
    entries = await _entries(session, user_id)

    await session.execute(update(LedgerEntry).where(LedgerEntry.id == entries[2].id).values(amount=Decimal("30")))
    await session.commit()

    verdict = await ledger.verify_chain(session, user_id)
    assert not verdict.valid
    assert verdict.broken_at == 2
    assert verdict.entry_id == entries[2].id


async def test_tampered_hash_detected_at_position(session, make_user, fund):
    user_id = (await make_user()).id
    for amount in ("1", "2", "3"):
        await fund(user_id, amount)
    entries = await _entries(session, user_id)

    await session.execute(update(LedgerEntry).where(LedgerEntry.id == entries[1].id).values(entry_hash="f" * 64))
    await session.commit()

    verdict = await ledger.verify_chain(session, user_id)
    assert not verdict.valid
    assert verdict.broken_at == 1
    assert verdict.reason == "hash_mismatch"


async def test_tampered_live_balance_detected(session, make_user, fund):
    user_id = (await make_user()).id
    await fund(user_id, "10")

    await session.execute(
        update(AccountBalance).where(AccountBalance.account_id == user_id).values(balance=Decimal("1000"))
    )
    await session.commit()

    verdict = await ledger.verify_chain(session, user_id)
    assert not verdict.valid
    assert verdict.reason == "live_balance_mismatch"


async def test_broken_chain_halts_debits_until_released(session, make_user, fund):
    user_id = (await make_user()).id
    await fund(user_id, "10")
    await fund(user_id, "5")
    entries = await _entries(session, user_id)
    await session.execute(update(LedgerEntry).where(LedgerEntry.id == entries[0].id).values(amount=Decimal("9")))
    await session.commit()

    assert not await ledger.verify_chain(session, user_id)
    assert await ledger.is_halted(session, user_id)

    with pytest.raises(ChainIntegrityViolation):
        await ledger.append(session, user_id, EntryType.WITHDRAWAL, Direction.DEBIT, Decimal("1"), Currency.USDT)
    # зачисления не блокируются
    await fund(user_id, "1")

    await ledger.release_halt(session, user_id)
    assert not await ledger.is_halted(session, user_id)
    await ledger.append(session, user_id, EntryType.WITHDRAWAL, Direction.DEBIT, Decimal("1"), Currency.USDT)


async def test_concurrent_debits_serialize(session_factory, session, make_user, fund):
    user_id = (await make_user()).id
    await fund(user_id, "3")

    async def debit():
        async with session_factory() as s:
            return await ledger.append(s, user_id, EntryType.WITHDRAWAL, Direction.DEBIT, Decimal("1"), Currency.USDT)

    results = await asyncio.gather(*(debit() for _ in range(5)), return_exceptions=True)

    assert sum(1 for r in results if isinstance(r, LedgerEntry)) == 3
    assert sum(1 for r in results if isinstance(r, InsufficientFunds)) == 2
    assert await ledger.current_balance(session, user_id, Currency.USDT) == Decimal("0")
    assert (await ledger.verify_chain(session, user_id)).valid


async def test_canonical_payload_is_versioned():
    fields = dict(
        previous_entry_hash=ledger.GENESIS_HASH, account_id="a", entry_type="deposit", direction="credit",
        amount=Decimal("1"), currency="USDT", balance_before=Decimal("0"), balance_after=Decimal("1"),
        created_at=datetime(2026, 1, 1),
    )
    assert ledger.canonical_payload(version=1, **fields).startswith("v1|")
    with pytest.raises(ValueError):
        ledger.canonical_payload(version=2, **fields)
