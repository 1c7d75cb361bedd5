from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vault.db import init_models
from vault.models.ledger_entry import Currency, Direction, EntryType
from vault.models.pool_allocation import PoolAllocation
from vault.models.transactions import Transaction
from vault.models.users import User
from vault.services import ledger
from vault.services.tiers import seed_default_tiers, tier_resolver
from vault.utils.formatting import truncate

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'vault.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    tier_resolver.invalidate()
    async with factory() as session:
        await seed_default_tiers(session)
    yield factory
    tier_resolver.invalidate()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session):
    async def factory(tier="FREE", telegram_id=None, **kwargs):
        user = User(tier=tier, telegram_id=telegram_id, **kwargs)
        session.add(user)
        await session.commit()
        return user
    return factory


@pytest.fixture
def fund(session):
    """Зачисляет USDT на счёт через обычную запись леджера."""
    async def factory(account_id, amount, currency=Currency.USDT):
        return await ledger.append(
            session, account_id, EntryType.DEPOSIT, Direction.CREDIT, Decimal(str(amount)), currency,
        )
    return factory


@pytest.fixture
def make_allocation(session, make_user):
    async def factory(total="30", days=30, deposit=NOW, tier="BRONZE", game="tapPot"):
        user = await make_user(tier=tier)
        tx = Transaction(
            user_id=user.id, tx_hash=f"tx-{user.id}", tier_name=tier,
            total_amount=Decimal(total), admin_amount=Decimal("0"), treasury_amount=Decimal(total),
        )
        session.add(tx)
        await session.flush()
        total = Decimal(total)
        allocation = PoolAllocation(
            transaction_id=tx.id, tier_name=tier, game=game, total_amount=total,
            daily_amount=truncate(total / days),
            total_days=days, deposit_date=deposit, expiry_date=deposit.date() + timedelta(days=days),
        )
        session.add(allocation)
        await session.commit()
        return allocation
    return factory
