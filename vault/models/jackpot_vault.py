import uuid

from sqlalchemy import Column, Numeric, String, Text, TIMESTAMP, UniqueConstraint

from vault.db import Base
from vault.utils.clock import utcnow


class JackpotVault(Base):
    __tablename__ = "jackpot_vault"
    __table_args__ = (UniqueConstraint("tier_name", "month_key", name="uq_jackpot_tier_month"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tier_name = Column(Text, nullable=False)
    month_key = Column(String(7), nullable=False)  # YYYY-MM
    total_balance = Column(Numeric(20, 4), nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
