"""
Shared test doubles: an in-memory database, a scriptable provider and request builders.
"""
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from common.schemas import TransferRequest
from common.settings import Settings
from payout_service.events import RecordingEventPublisher
from payout_service.models import (
    Base, Merchant, PayoutTransaction, Scheme, SchemeMapping, SchemePayoutCharge, new_id, utcnow,
)
from payout_service.orchestrator import TransferOrchestrator
from payout_service.provider_client import (
    MOCK_BANKS, AccountVerification, FloatBalance, StatusReport, TransferAccepted,
)
from payout_service.wallet import WalletLedgerGateway

def make_session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)

def make_settings(**overrides) -> Settings:
    values = {
        "payout_charge_imps": Decimal("5"),
        "payout_charge_neft": Decimal("3"),
        "payout_verification_charge": Decimal("2"),
        "payout_min_amount": Decimal("100"),
        "payout_max_amount": Decimal("200000"),
        "payout_duplicate_window_seconds": 120,
        "reconcile_stale_minutes": 5,
        "reconcile_auto_refund_hours": 48,
        "reconcile_batch_size": 50,
        "payout_mock_mode": False,
    }
    values.update(overrides)
    return Settings(**values)

class FakeProvider:
    """Async provider double. Results are scripted per test; every call is recorded."""

    def __init__(self, transfer_result=None, float_balance=Decimal("1000000")):
        self.transfer_result = transfer_result or TransferAccepted("UTR1001", "success", rrn="412345678901")
        self.float_balance = float_balance
        self.balance_error = None
        self.status_reports = {}
        self.initiated = []
        self.status_calls = []
        self.verifications = {}
        self.verify_calls = []
        self.on_initiate = None

    async def initiate_transfer(self, instruction):
        self.initiated.append(instruction)
        if self.on_initiate:
            self.on_initiate(instruction)
        if isinstance(self.transfer_result, Exception):
            raise self.transfer_result
        return self.transfer_result

    async def get_status(self, provider_txn_id):
        self.status_calls.append(provider_txn_id)
        report = self.status_reports.get(provider_txn_id)
        if isinstance(report, Exception):
            raise report
        return report or StatusReport(provider_txn_id, "pending")

    async def get_balance(self):
        if self.balance_error:
            raise self.balance_error
        return FloatBalance(balance=self.float_balance)

    async def list_banks(self, refresh=False):
        return list(MOCK_BANKS)

    async def verify_account(self, account_number, ifsc_code, bank_name=None):
        self.verify_calls.append((account_number, ifsc_code, bank_name))
        outcome = self.verifications.get(account_number)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or AccountVerification(
            account_number, ifsc_code, is_valid=True, account_holder_name="ASHA RAO",
            bank_name=bank_name, branch_name="Koramangala",
        )

def transfer_request(**overrides) -> TransferRequest:
    values = {
        "account_number": "123456789012",
        "ifsc_code": "HDFC0001234",
        "account_holder_name": "Asha Rao",
        "amount": Decimal("500"),
        "transfer_mode": "IMPS",
        "bank_id": 2,
        "bank_name": "HDFC Bank",
        "beneficiary_mobile": "9876543210",
        "sender_name": "Ravi Traders",
        "sender_mobile": "9123456789",
    }
    values.update(overrides)
    return TransferRequest(**values)

def fund(session_factory, merchant_id: str, amount) -> None:
    WalletLedgerGateway(session_factory).credit(merchant_id, Decimal(str(amount)), reference=f"SEED-{merchant_id}")

def build_orchestrator(session_factory, provider=None, settings=None):
    provider = provider or FakeProvider()
    events = RecordingEventPublisher()
    orchestrator = TransferOrchestrator(session_factory, provider, events, settings or make_settings())
    return orchestrator, provider, events

def add_merchant(session_factory, merchant_id, distributor_id=None, master_distributor_id=None):
    with session_factory() as db:
        db.add(Merchant(id=merchant_id, distributor_id=distributor_id, master_distributor_id=master_distributor_id))
        db.commit()

def add_scheme(session_factory, name, entity_id=None, entity_role="retailer", charge="5", charge_type="flat",
               transfer_mode="IMPS", min_amount="0", max_amount="999999", priority=100, service_type=None,
               scheme_type="custom", mapping_effective_to=None, slab_status="active",
               effective_from=None, effective_to=None):
    """Create a scheme with one slab, optionally mapped to an entity. Returns the scheme id."""
    now = utcnow()
    scheme_id = new_id()
    with session_factory() as db:
        db.add(Scheme(id=scheme_id, name=name, scheme_type=scheme_type, priority=priority,
                      effective_from=effective_from or now - timedelta(days=1), effective_to=effective_to))
        db.add(SchemePayoutCharge(scheme_id=scheme_id, transfer_mode=transfer_mode, min_amount=Decimal(min_amount),
                                  max_amount=Decimal(max_amount), charge=Decimal(charge), charge_type=charge_type,
                                  status=slab_status))
        if entity_id:
            db.add(SchemeMapping(scheme_id=scheme_id, entity_id=entity_id, entity_role=entity_role,
                                 service_type=service_type, priority=priority,
                                 effective_from=now - timedelta(days=1), effective_to=mapping_effective_to))
        db.commit()
    return scheme_id

def add_slab(session_factory, scheme_id, charge, min_amount, max_amount, transfer_mode="IMPS", charge_type="flat"):
    with session_factory() as db:
        db.add(SchemePayoutCharge(scheme_id=scheme_id, transfer_mode=transfer_mode, min_amount=Decimal(min_amount),
                                  max_amount=Decimal(max_amount), charge=Decimal(charge), charge_type=charge_type))
        db.commit()

def add_transaction(session_factory, merchant_id="m1", account_number="123456789012", status="processing",
                    created_at=None, **fields):
    tx = PayoutTransaction(
        id=new_id(),
        merchant_id=merchant_id,
        account_number=account_number,
        ifsc_code="HDFC0001234",
        account_holder_name="Asha Rao",
        bank_name="HDFC Bank",
        transfer_mode="IMPS",
        amount=Decimal("500"),
        charges=Decimal("5"),
        total_debited=Decimal("505"),
        client_ref_id=fields.pop("client_ref_id", f"PAY-{new_id()[:8]}"),
        status=status,
        created_at=created_at or utcnow(),
        **fields,
    )
    with session_factory() as db:
        db.add(tx)
        db.commit()
    return tx
