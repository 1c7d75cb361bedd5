from sqlalchemy import Column, Boolean, Numeric, String, TIMESTAMP

from vault.db import Base
from vault.utils.clock import utcnow


class AccountBalance(Base):
    """Материализованный баланс счёта, меняется только вместе с записью леджера."""

    __tablename__ = "account_balances"

    account_id = Column(String(80), primary_key=True)
    currency = Column(String(8), primary_key=True)
    balance = Column(Numeric(20, 4), nullable=False, default=0)
    halted = Column(Boolean, nullable=False, default=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
