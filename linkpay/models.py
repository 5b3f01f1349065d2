import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String, Text

from linkpay.database import Base


class AssetType(str, enum.Enum):
    SOL = "SOL"
    USDC = "USDC"
    USDT = "USDT"


class LedgerKind(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    RECONCILIATION = "reconciliation"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class LinkState(str, enum.Enum):
    CREATED = "created"
    DEPOSITED = "deposited"
    CLAIMING = "claiming"            # claim lock held, withdrawal in flight
    CLAIMED = "claimed"
    CLAIM_FAILED = "claim_failed"    # frozen until an operator reconciles it


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentLink(Base):
    __tablename__ = "payment_links"

    id = Column(String(64), primary_key=True)
    gross_amount = Column(BigInteger, nullable=False)           # lamports / base units
    asset_type = Column(String(10), nullable=False, default=AssetType.SOL.value)
    creator_address = Column(String(64))
    deposit_ref = Column(String(128))                           # null until deposit is recorded
    claimed = Column(Boolean, nullable=False, default=False)
    claimed_by = Column(String(64))
    withdraw_ref = Column(String(128))                          # set after the gateway succeeds
    reconciliation_required = Column(Boolean, nullable=False, default=False)
    reconciliation_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    link_id = Column(String(64), ForeignKey("payment_links.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)                   # deposit | withdraw | reconciliation
    status = Column(String(20), nullable=False)                 # pending | confirmed | failed
    amount = Column(BigInteger, nullable=False)
    fee = Column(BigInteger)
    counterparty_address = Column(String(64), index=True)
    external_ref = Column(String(128))
    detail = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
