import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# PayoutTransaction.status
PENDING = "pending"
PROCESSING = "processing"
SUCCESS = "success"
FAILED = "failed"
REFUNDED = "refunded"

OPEN_STATUSES = (PENDING, PROCESSING)
DUPLICATE_GUARD_STATUSES = (PENDING, PROCESSING, SUCCESS)

# LedgerEntry.tx_type
DEBIT = "DEBIT"
CREDIT = "CREDIT"
REFUND = "REFUND"

# LedgerEntry.status
ENTRY_PENDING = "pending"
ENTRY_COMPLETED = "completed"
ENTRY_FAILED = "failed"

def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this clock."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return str(uuid.uuid4())

def money(value) -> Decimal:
    """Currency amount rounded half-up to paise."""
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

class Wallet(Base):
    __tablename__ = "wallets"
    owner_id = Column(String(64), primary_key=True)
    wallet_type = Column(String(32), nullable=False, default="primary")
    balance = Column(Numeric(14, 2), nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class LedgerEntry(Base):
    __tablename__ = "wallet_ledger"
    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(64), ForeignKey("wallets.owner_id"), nullable=False, index=True)
    wallet_type = Column(String(32), nullable=False, default="primary")
    fund_category = Column(String(32), nullable=False, default="payout")
    tx_type = Column(String(16), nullable=False)  # DEBIT | CREDIT | REFUND
    credit = Column(Numeric(14, 2), nullable=False, default=0)
    debit = Column(Numeric(14, 2), nullable=False, default=0)
    balance_after = Column(Numeric(14, 2))
    reference_id = Column(String(128), nullable=False)
    transaction_id = Column(String(36), index=True)
    status = Column(String(16), nullable=False, default=ENTRY_PENDING)
    remarks = Column(String(512))
    created_at = Column(DateTime, nullable=False, default=utcnow)

class PayoutTransaction(Base):
    __tablename__ = "payout_transactions"
    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(64), nullable=False)
    account_number = Column(String(32), nullable=False)
    ifsc_code = Column(String(11), nullable=False)
    account_holder_name = Column(String(128), nullable=False)
    bank_id = Column(Integer)
    bank_name = Column(String(128), nullable=False)
    transfer_mode = Column(String(8), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    charges = Column(Numeric(12, 2), nullable=False, default=0)
    total_debited = Column(Numeric(12, 2), nullable=False)
    client_ref_id = Column(String(64), nullable=False, unique=True)
    provider_txn_id = Column(String(64), index=True)
    rrn = Column(String(64))
    scheme_id = Column(String(36))
    scheme_name = Column(String(128))
    status = Column(String(16), nullable=False, default=PENDING)
    failure_reason = Column(String(512))
    remarks = Column(String(256))
    wallet_debited = Column(Boolean, nullable=False, default=False)
    wallet_debit_id = Column(String(36))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_payout_merchant_destination", "merchant_id", "account_number", "created_at"),
        Index("ix_payout_status_created", "status", "created_at"),
    )

# Read-only to this service: onboarding and the scheme editor own these rows.

class Merchant(Base):
    __tablename__ = "merchants"
    id = Column(String(64), primary_key=True)
    role = Column(String(32), nullable=False, default="retailer")
    name = Column(String(128))
    email = Column(String(128))
    distributor_id = Column(String(64))
    master_distributor_id = Column(String(64))

class Scheme(Base):
    __tablename__ = "schemes"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(128), nullable=False)
    scheme_type = Column(String(16), nullable=False, default="custom")  # global | golden | custom
    service_scope = Column(String(32), nullable=False, default="all")
    status = Column(String(16), nullable=False, default="active")
    priority = Column(Integer, nullable=False, default=100)
    effective_from = Column(DateTime, nullable=False, default=utcnow)
    effective_to = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class SchemeMapping(Base):
    __tablename__ = "scheme_mappings"
    id = Column(String(36), primary_key=True, default=new_id)
    scheme_id = Column(String(36), ForeignKey("schemes.id"), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    entity_role = Column(String(32), nullable=False)  # retailer | distributor | master_distributor
    service_type = Column(String(32))  # NULL or 'all' matches every service
    priority = Column(Integer, nullable=False, default=100)
    status = Column(String(16), nullable=False, default="active")
    effective_from = Column(DateTime, nullable=False, default=utcnow)
    effective_to = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class SchemePayoutCharge(Base):
    __tablename__ = "scheme_payout_charges"
    id = Column(String(36), primary_key=True, default=new_id)
    scheme_id = Column(String(36), ForeignKey("schemes.id"), nullable=False, index=True)
    transfer_mode = Column(String(8), nullable=False)
    min_amount = Column(Numeric(12, 2), nullable=False, default=0)
    max_amount = Column(Numeric(12, 2), nullable=False, default=999999999)
    charge = Column(Numeric(12, 4), nullable=False, default=0)
    charge_type = Column(String(16), nullable=False, default="flat")  # flat | percentage
    status = Column(String(16), nullable=False, default="active")
