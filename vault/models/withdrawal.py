import enum
import uuid

from sqlalchemy import Column, ForeignKey, Numeric, String, Text, TIMESTAMP, func

from vault.db import Base


class WithdrawalStatus(str, enum.Enum):
    PENDING = "pending"
    BATCHED = "batched"
    PROCESSED = "processed"
    FAILED = "failed"
    REJECTED = "rejected"


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    currency = Column(String(8), nullable=False, default="USDT")
    gross_amount = Column(Numeric(20, 4), nullable=False)
    fee_percent = Column(Numeric(5, 2), nullable=False)
    fee_amount = Column(Numeric(20, 4), nullable=False)
    net_amount = Column(Numeric(20, 4), nullable=False)
    to_wallet = Column(Text, nullable=False)
    network = Column(Text, nullable=False, default="TON")
    status = Column(String(16), nullable=False, default="pending", index=True)
    tier_at_time = Column(Text, nullable=False)
    batch_id = Column(String(36), ForeignKey("withdrawal_batches.id"), nullable=True)
    ledger_entry_id = Column(String(36), ForeignKey("ledger_entries.id"), nullable=True)
    error_text = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    processed_at = Column(TIMESTAMP(timezone=True), nullable=True)
