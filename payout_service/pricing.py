"""
Pricing Resolver

Computes the charge for a payout as an ordered chain of strategies. The first
strategy that produces a positive charge wins; every strategy absorbs its own
lookup failures so a degraded pricing store never fails a transfer.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from common.settings import Settings, settings as default_settings
from payout_service.models import (
    Merchant, Scheme, SchemeMapping, SchemePayoutCharge, money, utcnow,
)

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ChargeQuote:
    charge: Decimal
    scheme_id: Optional[str] = None
    scheme_name: Optional[str] = None
    resolved_via: str = "default"  # retailer | distributor | master_distributor | global | direct | default

def _active_at(model, now: datetime):
    return [
        model.status == "active",
        model.effective_from <= now,
        or_(model.effective_to.is_(None), model.effective_to > now),
    ]

def _mapped_scheme(db: Session, entity_id: str, service_type: str, now: datetime) -> Optional[Scheme]:
    """Best mapping for one entity: priority ascending, then newest first."""
    stmt = (
        select(Scheme)
        .join(SchemeMapping, SchemeMapping.scheme_id == Scheme.id)
        .where(
            SchemeMapping.entity_id == entity_id,
            or_(
                SchemeMapping.service_type.is_(None),
                SchemeMapping.service_type == "all",
                SchemeMapping.service_type == service_type,
            ),
            *_active_at(SchemeMapping, now),
            *_active_at(Scheme, now),
        )
        .order_by(SchemeMapping.priority.asc(), SchemeMapping.created_at.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()

def _global_scheme(db: Session, service_type: str, now: datetime) -> Optional[Scheme]:
    stmt = (
        select(Scheme)
        .where(
            Scheme.scheme_type == "global",
            Scheme.service_scope.in_(["all", service_type]),
            *_active_at(Scheme, now),
        )
        .order_by(Scheme.priority.asc(), Scheme.created_at.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()

def resolve_scheme(
    db: Session,
    merchant_id: str,
    service_type: str,
    distributor_id: str = None,
    master_distributor_id: str = None,
    now: datetime = None,
) -> Optional[Tuple[Scheme, str]]:
    """Walk retailer -> distributor -> master distributor -> global and return (scheme, level)."""
    now = now or utcnow()
    chain = [
        ("retailer", merchant_id),
        ("distributor", distributor_id),
        ("master_distributor", master_distributor_id),
    ]
    for level, entity_id in chain:
        if not entity_id:
            continue
        scheme = _mapped_scheme(db, entity_id, service_type, now)
        if scheme:
            return scheme, level
    scheme = _global_scheme(db, service_type, now)
    if scheme:
        return scheme, "global"
    return None

def charge_for_scheme(db: Session, scheme_id: str, amount: Decimal, transfer_mode: str) -> Optional[Decimal]:
    """Charge from the slab whose band contains amount; None when no slab matches."""
    slab = db.execute(
        select(SchemePayoutCharge)
        .where(
            SchemePayoutCharge.scheme_id == scheme_id,
            SchemePayoutCharge.transfer_mode == transfer_mode,
            SchemePayoutCharge.status == "active",
            SchemePayoutCharge.min_amount <= amount,
            SchemePayoutCharge.max_amount >= amount,
        )
        .order_by(SchemePayoutCharge.min_amount.desc())
        .limit(1)
    ).scalars().first()
    if slab is None:
        return None
    if slab.charge_type == "percentage":
        return money(Decimal(amount) * Decimal(slab.charge) / Decimal(100))
    return money(slab.charge)

class PricingStrategy:
    name = "strategy"

    def quote(self, merchant_id: str, service_type: str, amount: Decimal, transfer_mode: str) -> Optional[ChargeQuote]:
        raise NotImplementedError

class HierarchySchemeStrategy(PricingStrategy):
    """Scheme inherited through the merchant's distribution hierarchy."""
    name = "hierarchy"

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def quote(self, merchant_id, service_type, amount, transfer_mode):
        try:
            with self.session_factory() as db:
                merchant = db.get(Merchant, merchant_id)
                resolved = resolve_scheme(
                    db,
                    merchant_id,
                    service_type,
                    distributor_id=merchant.distributor_id if merchant else None,
                    master_distributor_id=merchant.master_distributor_id if merchant else None,
                )
                if not resolved:
                    return None
                scheme, level = resolved
                charge = charge_for_scheme(db, scheme.id, amount, transfer_mode)
        except Exception as e:
            logger.warning(f"Hierarchy pricing lookup failed for {merchant_id}: {e}")
            return None
        if not charge:
            logger.info(f"Scheme {scheme.name} has no {transfer_mode} charge for {amount}")
            return None
        return ChargeQuote(charge=charge, scheme_id=scheme.id, scheme_name=scheme.name, resolved_via=level)

class DirectMappingStrategy(PricingStrategy):
    """The merchant's own mapping only, without walking the hierarchy."""
    name = "direct"

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def quote(self, merchant_id, service_type, amount, transfer_mode):
        try:
            with self.session_factory() as db:
                scheme = _mapped_scheme(db, merchant_id, service_type, utcnow())
                if scheme is None:
                    return None
                charge = charge_for_scheme(db, scheme.id, amount, transfer_mode)
        except Exception as e:
            logger.warning(f"Direct pricing lookup failed for {merchant_id}: {e}")
            return None
        if not charge:
            return None
        return ChargeQuote(charge=charge, scheme_id=scheme.id, scheme_name=scheme.name, resolved_via="direct")

class StaticDefaultStrategy(PricingStrategy):
    name = "default"

    def __init__(self, settings: Settings = None):
        self.settings = settings or default_settings

    def quote(self, merchant_id, service_type, amount, transfer_mode):
        return ChargeQuote(charge=money(self.settings.default_charge(transfer_mode)))

class PricingResolver:
    def __init__(self, session_factory: sessionmaker = None, settings: Settings = None,
                 strategies: List[PricingStrategy] = None):
        self.settings = settings or default_settings
        if strategies is None:
            strategies = [
                HierarchySchemeStrategy(session_factory),
                DirectMappingStrategy(session_factory),
                StaticDefaultStrategy(self.settings),
            ]
        self.strategies = strategies

    def resolve(self, merchant_id: str, service_type: str, amount: Decimal, transfer_mode: str) -> ChargeQuote:
        amount = money(amount)
        for strategy in self.strategies:
            quote = strategy.quote(merchant_id, service_type, amount, transfer_mode)
            if quote is not None and quote.charge > 0:
                logger.info(
                    f"Priced {transfer_mode} {amount} at {quote.charge} via {quote.resolved_via}",
                    extra={"merchant_id": merchant_id, "scheme_id": quote.scheme_id},
                )
                return quote
        # A custom chain without a default still never fails the transfer
        return ChargeQuote(charge=money(self.settings.default_charge(transfer_mode)))
