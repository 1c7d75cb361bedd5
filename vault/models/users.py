import uuid

from sqlalchemy import Column, BigInteger, Integer, String, Text, TIMESTAMP, func

from vault.db import Base
from vault.utils.clock import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    telegram_id = Column(BigInteger, unique=True, nullable=True)
    username = Column(Text, nullable=True)
    tier = Column(Text, nullable=False, default="FREE")

    energy = Column(Integer, nullable=False, default=1000)
    max_energy = Column(Integer, nullable=False, default=1000)
    last_energy_refill = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    last_free_refill = Column(TIMESTAMP(timezone=True), nullable=True)

    subscription_expiry = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
