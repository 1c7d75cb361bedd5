from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from vault.config import settings

# sqlite+aiosqlite локально, postgresql+asyncpg в проде
engine = create_async_engine(settings.db_dsn, echo=False)

# сервисы отдают объекты после commit, поэтому без expire
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class Base(DeclarativeBase):
    pass


async def init_models(bind: AsyncEngine = engine) -> None:
    """Схема через create_all: без миграций, недостающие таблицы просто создаются."""
    from vault.models import (  # noqa: F401
        account_balance, jackpot_vault, ledger_entry, pool_allocation, tiers,
        transactions, unclaimed_fund, users, withdrawal, withdrawal_batch,
    )

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
