from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from vault.exceptions import PaymentMismatch, UnknownTier
from vault.models.ledger_entry import Currency
from vault.models.pool_allocation import PoolAllocation
from vault.models.users import User
from vault.services import ledger
from vault.services.allocation import AllocationService, jackpot_account, jackpot_balance
from vault.services.subscriptions import expire_subscriptions, process_subscription_payment
from vault.services.withdrawals import WithdrawalService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def test_purchase_splits_and_allocates(session, make_user):
    user = await make_user()

    result = await process_subscription_payment(session, user.id, "0xabc", "bronze", Decimal("5.00"), now=NOW)

    tx = result.transaction
    assert result.created
    assert Decimal(tx.admin_amount) == Decimal("2.00")
    assert Decimal(tx.treasury_amount) == Decimal("3.00")

    by_game = {a.game: a for a in result.allocations}
    assert Decimal(by_game["tapPot"].total_amount) == Decimal("1.5")
    assert Decimal(by_game["tapPot"].daily_amount) == Decimal("0.05")
    assert Decimal(by_game["predictPot"].total_amount) == Decimal("0.9")
    assert by_game["tapPot"].expiry_date == NOW.date() + timedelta(days=30)
    assert sum(Decimal(a.total_amount) for a in result.allocations) == Decimal("3.00")

    user = await session.get(User, user.id, populate_existing=True)
    assert user.tier == "BRONZE"


async def test_lump_game_goes_to_jackpot_vault(session, make_user):
    user = await make_user()
    result = await process_subscription_payment(session, user.id, "0xlump", "BRONZE", Decimal("5"), now=NOW)

    wheel = next(a for a in result.allocations if a.game == "wheelVault")
    assert wheel.drip_type == "lump"
    assert wheel.active is False
    assert Decimal(wheel.amount_released) == Decimal("0.6")
    assert await jackpot_balance(session, "BRONZE", NOW.date()) == Decimal("0.6")
    assert await ledger.current_balance(session, jackpot_account("BRONZE"), Currency.USDT) == Decimal("0.6")


async def test_repeated_tx_hash_is_idempotent(session, make_user):
    user = await make_user()
    first = await process_subscription_payment(session, user.id, "0xdup", "SILVER", Decimal("15"), now=NOW)
    second = await process_subscription_payment(session, user.id, "0xdup", "SILVER", Decimal("15"), now=NOW)

    assert not second.created
    assert second.transaction.id == first.transaction.id
    count = (await session.execute(select(func.count(PoolAllocation.id)))).scalar_one()
    assert count == 3


async def test_wrong_amount_or_tier_rejected(session, make_user):
    user = await make_user()
    with pytest.raises(PaymentMismatch):
        await process_subscription_payment(session, user.id, "0x1", "GOLD", Decimal("49"), now=NOW)
    with pytest.raises(UnknownTier):
        await process_subscription_payment(session, user.id, "0x2", "PLATINUM", Decimal("50"), now=NOW)
    with pytest.raises(UnknownTier):
        await process_subscription_payment(session, user.id, "0x3", "FREE", Decimal("0"), now=NOW)


async def test_pool_status_uses_minimum_seed(session, make_user):
    user = await make_user()
    await process_subscription_payment(session, user.id, "0xpool", "BRONZE", Decimal("5"), now=NOW)

    status = await AllocationService.get_pool_status(session, "BRONZE", now=NOW)

    assert status.active_subscribers == 1
    assert status.seeded
    assert status.daily_total_pool == Decimal("1.00")
    assert status.jackpot_vault == Decimal("0.6")
    assert status.released["wheelVault"] == Decimal("0.6")


async def test_expired_subscribers_fall_back_to_free(session, make_user):
    lapsed_id = (await make_user()).id
    current_id = (await make_user()).id
    await process_subscription_payment(session, lapsed_id, "0xold", "GOLD", Decimal("50"), now=NOW)
    await process_subscription_payment(session, current_id, "0xnew", "GOLD", Decimal("50"), now=NOW + timedelta(days=20))

    expired = await expire_subscriptions(session, now=NOW + timedelta(days=31))

    assert expired == [lapsed_id]
    lapsed = await session.get(User, lapsed_id, populate_existing=True)
    current = await session.get(User, current_id, populate_existing=True)
    assert lapsed.tier == "FREE"
    assert current.tier == "GOLD"

    # после понижения комиссия вывода снова по FREE
    quote = await WithdrawalService.quote_withdrawal(session, lapsed.tier, Decimal("100"))
    assert quote.fee_amount == Decimal("5.0000")
    assert await expire_subscriptions(session, now=NOW + timedelta(days=31)) == []
