import uuid

from sqlalchemy import Column, ForeignKey, Numeric, String, Text, TIMESTAMP, func

from vault.db import Base


class Transaction(Base):
    """Подтверждённая оплата тарифа, из неё создаются аллокации пулов."""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tx_hash = Column(Text, unique=True, nullable=False)
    tier_name = Column(Text, nullable=False)
    total_amount = Column(Numeric(20, 4), nullable=False)
    admin_amount = Column(Numeric(20, 4), nullable=False)
    treasury_amount = Column(Numeric(20, 4), nullable=False)
    status = Column(Text, nullable=False, server_default="confirmed")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
