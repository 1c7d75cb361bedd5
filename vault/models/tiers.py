from sqlalchemy import Column, Integer, BigInteger, Numeric, Text

from vault.db import Base


class Tier(Base):
    __tablename__ = "tiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, unique=True, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    daily_unit = Column(Numeric(10, 2), nullable=False, default=0)
    tap_multiplier = Column(Integer, nullable=False, default=1)
    energy_refill_rate_ms = Column(Integer, nullable=False, default=2000)
    free_refills_per_day = Column(Integer, nullable=False, default=0)
    refill_cooldown_ms = Column(BigInteger, nullable=True)  # NULL - только суточный бесплатный рефилл
    withdrawal_fee_percent = Column(Numeric(5, 2), nullable=False, default=0)
