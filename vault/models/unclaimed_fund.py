import uuid

from sqlalchemy import Column, ForeignKey, Numeric, String, Text, TIMESTAMP, func

from vault.db import Base


class UnclaimedFund(Base):
    __tablename__ = "unclaimed_funds"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    allocation_id = Column(String(36), ForeignKey("pool_allocations.id"), unique=True, nullable=False)
    tier_name = Column(Text, nullable=False)
    game = Column(Text, nullable=False)
    amount = Column(Numeric(20, 4), nullable=False)
    destination = Column(Text, nullable=False, server_default="admin")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
