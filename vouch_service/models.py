from decimal import Decimal, ROUND_DOWN
from sqlalchemy import Column, Integer, String, BigInteger, DateTime, ForeignKey, CheckConstraint, Index, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Balances are stored as integer milli-TRUST
UNITS_PER_TRUST = 1000

def to_units(amount) -> int:
    """TRUST amount -> integer units; sub-unit precision is truncated"""
    value = (Decimal(str(amount)) * UNITS_PER_TRUST).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(value)

def from_units(units: int) -> Decimal:
    return Decimal(units) / UNITS_PER_TRUST

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    display_name = Column(String(100), nullable=False)
    avatar_ref = Column(String(512), nullable=True)
    trust_balance = Column(BigInteger, nullable=False, default=0)
    reputation = Column(Integer, nullable=False, default=0)
    join_order = Column(Integer, nullable=False, unique=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("trust_balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("reputation >= 0", name="ck_accounts_reputation_non_negative"),
        Index("ix_accounts_ranking", "reputation", "join_order"),
    )

class VouchEvent(Base):
    __tablename__ = "vouch_events"
    id = Column(String(36), primary_key=True)
    voucher_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    vouchee_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("voucher_id <> vouchee_id", name="ck_vouch_events_distinct_parties"),
    )

class Activity(Base):
    __tablename__ = "activities"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False)
    event_id = Column(String(36), ForeignKey("vouch_events.id"), nullable=False)
    kind = Column(String(16), nullable=False)  # 'vouch_given' or 'vouch_received'
    counterparty_id = Column(String(64), nullable=False)
    description = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_activities_account_recent", "account_id", "created_at", "id"),
    )
