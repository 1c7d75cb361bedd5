import enum
import uuid

from sqlalchemy import Column, Integer, Numeric, String, Text, TIMESTAMP, UniqueConstraint

from vault.db import Base


class EntryType(str, enum.Enum):
    TAP = "tap"
    WHEEL_SPIN = "wheel-spin"
    PREDICTION_PAYOUT = "prediction-payout"
    TASK_REWARD = "task-reward"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    POOL_DRIP = "pool-drip"
    ADJUSTMENT = "adjustment"


class Direction(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Currency(str, enum.Enum):
    COINS = "COINS"
    USDT = "USDT"


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_account_sequence"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # UUID пользователя либо служебный счёт: pool:<TIER>:<game>, jackpot:<TIER>, unclaimed:<dest>
    account_id = Column(String(80), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    entry_type = Column(String(32), nullable=False)
    direction = Column(String(6), nullable=False)
    amount = Column(Numeric(20, 4), nullable=False)
    currency = Column(String(8), nullable=False)
    balance_before = Column(Numeric(20, 4), nullable=False)
    balance_after = Column(Numeric(20, 4), nullable=False)
    game = Column(Text, nullable=True)
    reference_id = Column(String(120), nullable=True, index=True)
    tier_at_time = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    previous_entry_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False)
    hash_version = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
