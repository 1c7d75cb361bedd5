from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from vault.models.ledger_entry import Currency, LedgerEntry
from vault.models.pool_allocation import PoolAllocation
from vault.services import ledger
from vault.services.allocation import AllocationService, pool_account, split_amount, unclaimed_account

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def day(n):
    return NOW.date() + timedelta(days=n)


async def test_thirty_daily_drips_release_everything(session, make_allocation):
    alloc = await make_allocation(total="30", days=30)

    for n in range(1, 31):
        result = await AllocationService.run_drip_cycle(session, alloc.id, day(n))
        assert result.status == "released"

    alloc = await session.get(PoolAllocation, alloc.id, populate_existing=True)
    assert Decimal(alloc.amount_released) == Decimal("30")
    assert alloc.days_released == 30
    assert alloc.active is False
    assert await AllocationService.get_unclaimed(session, alloc.id) is None
    assert await ledger.current_balance(session, pool_account("BRONZE", "tapPot"), Currency.USDT) == Decimal("30")

    after = await AllocationService.run_drip_cycle(session, alloc.id, day(31))
    assert after.status == "inactive"


async def test_final_day_absorbs_rounding_residue(session, make_allocation):
    alloc = await make_allocation(total="10", days=3)

    released = [
        (await AllocationService.run_drip_cycle(session, alloc.id, day(n))).released for n in (1, 2, 3)
    ]

    assert released == [Decimal("3.3333"), Decimal("3.3333"), Decimal("3.3334")]
    assert sum(released) == Decimal("10")


async def test_same_day_drip_is_noop(session, make_allocation):
    alloc = await make_allocation()

    first = await AllocationService.run_drip_cycle(session, alloc.id, day(1))
    second = await AllocationService.run_drip_cycle(session, alloc.id, day(1))

    assert first.status == "released"
    assert second.status == "duplicate"
    alloc = await session.get(PoolAllocation, alloc.id, populate_existing=True)
    assert Decimal(alloc.amount_released) == Decimal("1")
    assert alloc.days_released == 1
    entries = (await session.execute(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.reference_id == f"{alloc.id}:{day(1).isoformat()}")
    )).scalar_one()
    assert entries == 1


async def test_expired_allocation_moves_remainder_to_unclaimed(session, make_allocation):
    alloc = await make_allocation(total="30", days=30)
    for n in range(1, 11):
        await AllocationService.run_drip_cycle(session, alloc.id, day(n))

    result = await AllocationService.run_drip_cycle(session, alloc.id, day(31))

    assert result.status == "closed"
    assert result.unclaimed == Decimal("20")
    unclaimed = await AllocationService.get_unclaimed(session, alloc.id)
    assert Decimal(unclaimed.amount) == Decimal("20")
    assert unclaimed.destination == "admin"
    assert await ledger.current_balance(session, unclaimed_account("admin"), Currency.USDT) == Decimal("20")

    alloc = await session.get(PoolAllocation, alloc.id, populate_existing=True)
    assert alloc.active is False
    assert Decimal(alloc.amount_released) + Decimal(unclaimed.amount) == Decimal(alloc.total_amount)


async def test_daily_drip_runs_each_allocation(session_factory, session, make_allocation):
    first = await make_allocation(total="30", days=30, game="tapPot")
    second = await make_allocation(total="9", days=30, game="predictPot")

    results = await AllocationService.run_daily_drip(session_factory, day(1))
    again = await AllocationService.run_daily_drip(session_factory, day(1))

    assert {r.allocation_id for r in results} == {first.id, second.id}
    assert {r.status for r in results} == {"released"}
    assert {r.status for r in again} == {"duplicate"}
    assert await ledger.current_balance(session, pool_account("BRONZE", "predictPot"), Currency.USDT) == Decimal("0.3")


async def test_pool_chains_stay_valid_after_drips(session, make_allocation):
    alloc = await make_allocation(total="5", days=5)
    for n in range(1, 6):
        await AllocationService.run_drip_cycle(session, alloc.id, day(n))

    verdict = await ledger.verify_chain(session, pool_account("BRONZE", "tapPot"))
    assert verdict.valid
    assert verdict.total_entries == 5


def test_split_amount_gives_residue_to_heaviest_game():
    parts = split_amount(Decimal("1"), {"a": Decimal("1"), "b": Decimal("1"), "c": Decimal("1")})
    assert sum(parts.values()) == Decimal("1")
    assert parts["a"] == Decimal("0.3334")
    assert parts["b"] == parts["c"] == Decimal("0.3333")


async def test_out_of_order_dates_release_once(session, make_allocation):
    alloc = await make_allocation(total="30", days=30)

    statuses = [(await AllocationService.run_drip_cycle(session, alloc.id, day(n))).status for n in (5, 3, 5, 3, 5)]

    assert statuses == ["released", "duplicate", "duplicate", "duplicate", "duplicate"]
    alloc = await session.get(PoolAllocation, alloc.id, populate_existing=True)
    assert Decimal(alloc.amount_released) == Decimal("1")
    assert alloc.days_released == 1
    assert alloc.last_drip_date == day(5)
    assert await ledger.current_balance(session, pool_account("BRONZE", "tapPot"), Currency.USDT) == Decimal("1")


async def test_ledger_reference_blocks_repeat_day(session, make_allocation):
    alloc = await make_allocation(total="30", days=30)
    await AllocationService.run_drip_cycle(session, alloc.id, day(1))

    # строка аллокации потеряла отметку о дрипе, запись в леджере осталась
    await session.execute(update(PoolAllocation).where(PoolAllocation.id == alloc.id).values(last_drip_date=None))
    await session.commit()

    result = await AllocationService.run_drip_cycle(session, alloc.id, day(1))

    assert result.status == "duplicate"
    assert await ledger.current_balance(session, pool_account("BRONZE", "tapPot"), Currency.USDT) == Decimal("1")


def _fail_after_post(monkeypatch, account_id, error=None):
    original = ledger.post_entry
    calls = []

    async def post_then_fail(session, account, *args, **kwargs):
        entry = await original(session, account, *args, **kwargs)
        if account == account_id:
            calls.append(account)
            if error is not None and len(calls) > 1:
                return entry
            raise error or RuntimeError("allocation row update failed")
        return entry

    monkeypatch.setattr(ledger, "post_entry", post_then_fail)
    return calls


async def test_failed_cycle_leaves_no_pool_credit(session, make_allocation, monkeypatch):
    alloc_id = (await make_allocation(total="30", days=30)).id
    pool = pool_account("BRONZE", "tapPot")
    _fail_after_post(monkeypatch, pool)

    with pytest.raises(RuntimeError):
        await AllocationService.run_drip_cycle(session, alloc_id, day(1))

    assert await ledger.current_balance(session, pool, Currency.USDT) == Decimal("0")
    assert await ledger.get_entries(session, pool) == []
    alloc = await session.get(PoolAllocation, alloc_id, populate_existing=True)
    assert Decimal(alloc.amount_released) == Decimal("0")
    assert alloc.days_released == 0
    assert alloc.last_drip_date is None

    # повтор того же дня после сбоя проходит целиком
    monkeypatch.undo()
    result = await AllocationService.run_drip_cycle(session, alloc_id, day(1))
    assert result.status == "released"
    assert await ledger.current_balance(session, pool, Currency.USDT) == Decimal("1")


async def test_daily_drip_continues_past_broken_allocation(session_factory, session, make_allocation, monkeypatch):
    broken_id = (await make_allocation(total="30", days=30, game="tapPot")).id
    healthy_id = (await make_allocation(total="9", days=30, game="predictPot")).id
    _fail_after_post(monkeypatch, pool_account("BRONZE", "tapPot"))

    results = await AllocationService.run_daily_drip(session_factory, day(1))

    assert [(r.allocation_id, r.status) for r in results] == [(healthy_id, "released")]
    assert await ledger.current_balance(session, pool_account("BRONZE", "tapPot"), Currency.USDT) == Decimal("0")
    assert await ledger.current_balance(session, pool_account("BRONZE", "predictPot"), Currency.USDT) == Decimal("0.3")
    broken = await session.get(PoolAllocation, broken_id, populate_existing=True)
    assert Decimal(broken.amount_released) == Decimal("0")
    assert broken.active is True


async def test_daily_drip_retries_transient_db_error(session_factory, session, make_allocation, monkeypatch):
    alloc_id = (await make_allocation(total="30", days=30)).id
    pool = pool_account("BRONZE", "tapPot")
    calls = _fail_after_post(monkeypatch, pool, OperationalError("UPDATE pool_allocations", {}, Exception("database is locked")))

    results = await AllocationService.run_daily_drip(session_factory, day(1), retries=2)

    assert len(calls) == 2
    assert [(r.allocation_id, r.status) for r in results] == [(alloc_id, "released")]
    assert await ledger.current_balance(session, pool, Currency.USDT) == Decimal("1")
    assert len(await ledger.get_entries(session, pool)) == 1
