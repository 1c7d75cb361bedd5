import uuid

from sqlalchemy import Column, Integer, Numeric, String, TIMESTAMP, func

from vault.db import Base


class WithdrawalBatch(Base):
    __tablename__ = "withdrawal_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    total_withdrawals = Column(Integer, nullable=False, default=0)
    total_gross = Column(Numeric(20, 4), nullable=False, default=0)
    total_fees = Column(Numeric(20, 4), nullable=False, default=0)
    total_net = Column(Numeric(20, 4), nullable=False, default=0)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    processed_at = Column(TIMESTAMP(timezone=True), nullable=True)
