import uuid

from sqlalchemy import (
    Column, Boolean, Date, ForeignKey, Integer, Numeric, String, Text, TIMESTAMP, func,
)

from vault.db import Base


class PoolAllocation(Base):
    __tablename__ = "pool_allocations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False)
    tier_name = Column(Text, nullable=False)
    game = Column(Text, nullable=False)
    total_amount = Column(Numeric(20, 4), nullable=False)
    daily_amount = Column(Numeric(20, 4), nullable=False, default=0)
    total_days = Column(Integer, nullable=False, default=30)
    days_released = Column(Integer, nullable=False, default=0)
    amount_released = Column(Numeric(20, 4), nullable=False, default=0)
    drip_type = Column(String(8), nullable=False, default="daily")  # 'daily' или 'lump'
    last_drip_date = Column(Date, nullable=True)
    deposit_date = Column(TIMESTAMP(timezone=True), nullable=False)
    expiry_date = Column(Date, nullable=False)
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
