"""
Transfer Orchestrator

State machine for one payout attempt:

    pending -> processing -> success | failed | refunded

Nothing is written before validation, idempotency replay, the duplicate guard,
pricing and the balance checks have passed. The transaction row and the wallet
reservation are then committed together, and only after that commit is the
provider called. Explicit provider rejections are refunded immediately; ambiguous
outcomes stay processing and are left to the reconciler. Only the reconciler
ever moves a transaction to refunded.
"""
import logging
import random
import re
import string
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from common.schemas import (
    AccountVerifyRequest, AccountVerifyResponse, TransactionSnapshot, TransferReceipt, TransferRequest,
)
from common.settings import Settings, settings as default_settings
from common.tracing import payout_tracer
from payout_service.duplicate_guard import DuplicateGuard
from payout_service.errors import (
    AccountVerificationFailed, DuplicateRequest, InsufficientFunds, InternalFailure, ProviderRejected,
    ProviderTimeout, ProviderUnavailable, ProviderUnderfunded, TransactionNotFound, TransferValidationError,
)
from payout_service.events import PayoutEventPublisher
from payout_service.models import FAILED, OPEN_STATUSES, REFUNDED, PayoutTransaction, money, new_id
from payout_service.pricing import ChargeQuote, PricingResolver
from payout_service.provider_client import (
    ResilientProvider, TransferAccepted, TransferInstruction, TransferRejected, TransferTimedOut,
)
from payout_service.reconciler import Reconciler
from payout_service.transactions import TransactionStore, mask_account, refund_reference
from payout_service.wallet import WalletLedgerGateway

logger = logging.getLogger(__name__)

MOBILE_RE = re.compile(r"^[6-9]\d{9}$")
ACCOUNT_RE = re.compile(r"^\d{9,18}$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
TRANSFER_MODES = ("IMPS", "NEFT")
PROVIDER_ID_WRITE_ATTEMPTS = 3

@dataclass(frozen=True)
class ValidatedTransfer:
    account_number: str
    ifsc_code: str
    account_holder_name: str
    amount: Decimal
    transfer_mode: str
    bank_id: int
    bank_name: str
    beneficiary_mobile: str
    sender_name: str
    sender_mobile: str
    sender_email: Optional[str]
    remarks: Optional[str]

def generate_client_ref_id(merchant_id: str) -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"PAY-{merchant_id}-{int(time.time() * 1000)}-{suffix}"

def _strip_spaces(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", value or "")

def normalize_account(account_number: Optional[str], ifsc_code: Optional[str]):
    """Strip spaces, upper-case the IFSC and check both formats."""
    account_number = _strip_spaces(account_number)
    if not ACCOUNT_RE.match(account_number):
        raise TransferValidationError("Invalid account number. Must be 9-18 digits only.", field="account_number")
    ifsc = _strip_spaces(ifsc_code).upper()
    if not IFSC_RE.match(ifsc):
        raise TransferValidationError("Invalid IFSC code format. Expected format: ABCD0123456", field="ifsc_code")
    return account_number, ifsc

def validate_transfer(request: TransferRequest, settings: Settings) -> ValidatedTransfer:
    """Normalise a transfer request or raise TransferValidationError with the first problem found."""
    if not (request.account_number or "").strip():
        raise TransferValidationError("Account number is required", field="account_number")
    if not (request.ifsc_code or "").strip():
        raise TransferValidationError("IFSC code is required", field="ifsc_code")
    if not (request.account_holder_name or "").strip():
        raise TransferValidationError("Account holder name is required", field="account_holder_name")
    if not request.bank_id or not (request.bank_name or "").strip():
        raise TransferValidationError("Bank ID and bank name are required", field="bank_id")
    if not (request.beneficiary_mobile and request.sender_name and request.sender_mobile):
        raise TransferValidationError("Beneficiary mobile, sender name, and sender mobile are required")

    account_number, ifsc = normalize_account(request.account_number, request.ifsc_code)

    beneficiary_mobile = _strip_spaces(request.beneficiary_mobile)
    if not MOBILE_RE.match(beneficiary_mobile):
        raise TransferValidationError("Invalid beneficiary mobile number", field="beneficiary_mobile")
    sender_mobile = _strip_spaces(request.sender_mobile)
    if not MOBILE_RE.match(sender_mobile):
        raise TransferValidationError("Invalid sender mobile number", field="sender_mobile")

    try:
        amount = money(request.amount)
    except (InvalidOperation, ValueError):
        raise TransferValidationError("Invalid amount", field="amount")
    if amount < settings.payout_min_amount:
        raise TransferValidationError(
            f"Minimum transfer amount is ₹{settings.payout_min_amount}",
            field="amount",
            context={"min_amount": settings.payout_min_amount},
        )
    if amount > settings.payout_max_amount:
        raise TransferValidationError(
            f"Maximum transfer amount is ₹{settings.payout_max_amount}",
            field="amount",
            context={"max_amount": settings.payout_max_amount},
        )

    mode = (request.transfer_mode or "").strip().upper()
    if mode not in TRANSFER_MODES:
        raise TransferValidationError("Transfer mode must be IMPS or NEFT", field="transfer_mode")

    return ValidatedTransfer(
        account_number=account_number,
        ifsc_code=ifsc,
        account_holder_name=request.account_holder_name.strip(),
        amount=amount,
        transfer_mode=mode,
        bank_id=request.bank_id,
        bank_name=request.bank_name.strip(),
        beneficiary_mobile=beneficiary_mobile,
        sender_name=request.sender_name.strip(),
        sender_mobile=sender_mobile,
        sender_email=(request.sender_email or "").strip() or None,
        remarks=(request.remarks or "").strip() or None,
    )

class TransferOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        provider: ResilientProvider,
        events: PayoutEventPublisher = None,
        settings: Settings = None,
        wallet: WalletLedgerGateway = None,
        pricing: PricingResolver = None,
        duplicate_guard: DuplicateGuard = None,
        store: TransactionStore = None,
        reconciler: Reconciler = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.provider = provider
        self.events = events
        self.wallet = wallet or WalletLedgerGateway(session_factory)
        self.pricing = pricing or PricingResolver(session_factory, self.settings)
        self.duplicate_guard = duplicate_guard or DuplicateGuard(
            session_factory, self.settings.payout_duplicate_window_seconds
        )
        self.store = store or TransactionStore(session_factory, self.wallet)
        self.reconciler = reconciler or Reconciler(self.store, provider, events, self.settings)

    def _publish(self, event_type: str, tx: PayoutTransaction, status: str = None, **kwargs):
        if self.events is not None:
            self.events.publish_for(event_type, tx, status=status, **kwargs)

    def _receipt(self, tx: PayoutTransaction, status: str, message: str, provider_txn_id: str = None,
                 rrn: str = None, replayed: bool = False) -> TransferReceipt:
        return TransferReceipt(
            success=status.lower() not in (FAILED, REFUNDED),
            message=message,
            status=status.upper(),
            transaction_id=tx.id,
            client_ref_id=tx.client_ref_id,
            provider_txn_id=provider_txn_id or tx.provider_txn_id,
            rrn=rrn or tx.rrn,
            amount=tx.amount,
            charges=tx.charges,
            total_debited=tx.total_debited,
            account_number=mask_account(tx.account_number),
            account_holder_name=tx.account_holder_name,
            bank_name=tx.bank_name,
            transfer_mode=tx.transfer_mode,
            scheme_name=tx.scheme_name,
            replayed=replayed,
        )

    def _replay(self, merchant_id: str, client_ref_id: str) -> Optional[TransferReceipt]:
        existing = self.store.get_by_client_ref(client_ref_id)
        if existing is None:
            return None
        if existing.merchant_id != merchant_id:
            raise TransferValidationError("client_ref_id is already in use", field="client_ref_id")
        logger.info(f"Replaying transfer {existing.id} for client_ref_id {client_ref_id}")
        return self._receipt(existing, existing.status, "Transfer already submitted", replayed=True)

    def _check_duplicate(self, merchant_id: str, account_number: str):
        check = self.duplicate_guard.check(merchant_id, account_number)
        if not check.blocked:
            return
        prior = check.prior_transaction
        raise DuplicateRequest(
            f"A transaction to this account was initiated {check.elapsed_seconds} seconds ago "
            f"(Status: {prior['status']}). Please wait {check.remaining_wait_seconds} seconds "
            f"before retrying to prevent duplicate transfers.",
            wait_seconds=check.remaining_wait_seconds,
            recent_transaction={
                "id": prior["id"],
                "client_ref_id": prior["client_ref_id"],
                "status": prior["status"],
                "amount": prior["amount"],
                "created_at": prior["created_at"],
            },
        )

    async def _check_provider_float(self, amount: Decimal):
        try:
            float_balance = await self.provider.get_balance()
        except (ProviderUnavailable, ProviderTimeout) as e:
            raise ProviderUnavailable("Payout service temporarily unavailable. Please try again later.", e)
        if float_balance.available < amount:
            logger.error(f"Provider float {float_balance.available} below requested {amount}")
            raise ProviderUnderfunded(available=float_balance.available, required=amount)

    def _create_and_reserve(self, merchant_id: str, client_ref_id: str, transfer: ValidatedTransfer,
                            quote: ChargeQuote, total: Decimal):
        """Insert the pending row and reserve funds in one database transaction."""
        transaction_id = new_id()
        with self.session_factory() as db, db.begin():
            tx = self.store.add_pending(
                db,
                id=transaction_id,
                merchant_id=merchant_id,
                account_number=transfer.account_number,
                ifsc_code=transfer.ifsc_code,
                account_holder_name=transfer.account_holder_name,
                bank_id=transfer.bank_id,
                bank_name=transfer.bank_name,
                transfer_mode=transfer.transfer_mode,
                amount=transfer.amount,
                charges=quote.charge,
                total_debited=total,
                client_ref_id=client_ref_id,
                scheme_id=quote.scheme_id,
                scheme_name=quote.scheme_name,
                remarks=transfer.remarks,
            )
            debit_entry_id = self.wallet.reserve(
                merchant_id,
                transaction_id,
                total,
                description=f"Payout {transfer.transfer_mode} to {mask_account(transfer.account_number)}",
                reference=client_ref_id,
                db=db,
            )
        tx.wallet_debited = True
        tx.wallet_debit_id = debit_entry_id
        return tx, debit_entry_id

    async def submit_transfer(self, merchant_id: str, request: TransferRequest) -> TransferReceipt:
        transfer = validate_transfer(request, self.settings)

        if request.client_ref_id:
            replay = self._replay(merchant_id, request.client_ref_id)
            if replay is not None:
                return replay
            client_ref_id = request.client_ref_id
        else:
            client_ref_id = generate_client_ref_id(merchant_id)

        self._check_duplicate(merchant_id, transfer.account_number)

        quote = self.pricing.resolve(
            merchant_id, self.settings.payout_service_type, transfer.amount, transfer.transfer_mode
        )
        total = money(transfer.amount + quote.charge)

        balance = self.wallet.balance(merchant_id)
        if balance < total:
            raise InsufficientFunds(balance=balance, required=total, amount=transfer.amount, charges=quote.charge)

        await self._check_provider_float(transfer.amount)

        with payout_tracer.start_span("payout.transfer") as span:
            span.add_tag("client_ref_id", client_ref_id)
            span.add_tag("transfer_mode", transfer.transfer_mode)
            try:
                tx, debit_entry_id = self._create_and_reserve(merchant_id, client_ref_id, transfer, quote, total)
            except InsufficientFunds as e:
                raise InsufficientFunds(balance=e.balance, required=total, amount=transfer.amount,
                                        charges=quote.charge)
            except IntegrityError as e:
                # Concurrent submission with the same client_ref_id
                replay = self._replay(merchant_id, client_ref_id)
                if replay is not None:
                    return replay
                raise InternalFailure("Could not record transaction", original_error=e)
            except SQLAlchemyError as e:
                raise InternalFailure("Could not record transaction", original_error=e)

            span.add_tag("transaction_id", tx.id)
            logger.info(
                f"💰 Reserved {total} for payout {tx.id}",
                extra={"transaction_id": tx.id, "client_ref_id": client_ref_id, "merchant_id": merchant_id},
            )
            self._publish("PayoutInitiated", tx)

            self._enter_processing(tx)
            self._publish("PayoutProcessing", tx, status="processing")

            result = await self.provider.initiate_transfer(TransferInstruction(
                account_number=transfer.account_number,
                ifsc_code=transfer.ifsc_code,
                account_holder_name=transfer.account_holder_name,
                amount=transfer.amount,
                transfer_mode=transfer.transfer_mode,
                bank_id=transfer.bank_id,
                bank_name=transfer.bank_name,
                beneficiary_mobile=transfer.beneficiary_mobile,
                sender_name=transfer.sender_name,
                sender_mobile=transfer.sender_mobile,
                sender_email=transfer.sender_email,
                remarks=transfer.remarks,
                client_ref_id=client_ref_id,
            ))
            span.add_tag("provider.outcome", type(result).__name__)
            return self._apply_outcome(tx, debit_entry_id, result)

    def _enter_processing(self, tx: PayoutTransaction):
        """pending -> processing; a failure here is refunded before the provider is ever called."""
        try:
            moved = self.store.mark_processing(tx.id)
        except SQLAlchemyError as e:
            logger.error(f"Could not mark {tx.id} processing: {e}")
            moved = False
        if moved:
            tx.status = "processing"
            return
        try:
            self.store.close_with_refund(
                tx.id, FAILED, "Internal error before provider call", refund_reference(tx.client_ref_id)
            )
        except SQLAlchemyError as e:
            logger.critical(f"Refund after internal failure did not commit for {tx.id}: {e}")
        raise InternalFailure("Transfer could not be started; funds have been returned")

    def _persist_provider_id(self, tx: PayoutTransaction, provider_txn_id: str, log_extra: dict):
        """Keep the provider id so the reconciler queries instead of refunding an accepted transfer."""
        last_error = None
        for attempt in range(1, PROVIDER_ID_WRITE_ATTEMPTS + 1):
            try:
                self.store.attach_provider_id(tx.id, provider_txn_id)
                return
            except SQLAlchemyError as e:
                last_error = e
                logger.error(
                    f"Attempt {attempt}/{PROVIDER_ID_WRITE_ATTEMPTS} to store {provider_txn_id} on {tx.id} failed: {e}",
                    extra=log_extra,
                )
        logger.critical(
            f"Provider accepted {tx.id} as {provider_txn_id} and the id could not be stored", extra=log_extra
        )
        raise InternalFailure(
            f"Transfer was accepted by the provider as {provider_txn_id} but could not be recorded",
            original_error=last_error,
        )

    def _apply_outcome(self, tx: PayoutTransaction, debit_entry_id: str, result) -> TransferReceipt:
        log_extra = {"transaction_id": tx.id, "client_ref_id": tx.client_ref_id}

        if isinstance(result, TransferRejected):
            logger.warning(f"❌ Provider rejected {tx.id}: {result.reason}", extra=log_extra)
            try:
                self.store.close_with_refund(
                    tx.id, FAILED, result.reason, refund_reference(tx.client_ref_id),
                    provider_txn_id=result.provider_txn_id,
                )
            except SQLAlchemyError as e:
                logger.critical(f"Refund for rejected transfer {tx.id} did not commit: {e}", extra=log_extra)
                raise InternalFailure("Transfer failed and the refund could not be recorded", original_error=e)
            self._publish("PayoutFailed", tx, status=FAILED, reason=result.reason, refunded=True)
            raise ProviderRejected(result.reason, tx.id, tx.client_ref_id)

        if isinstance(result, TransferAccepted):
            try:
                if result.settled:
                    self.store.mark_success(tx.id, result.provider_txn_id, result.rrn, debit_entry_id)
                else:
                    self.store.record_acceptance(tx.id, result.provider_txn_id, debit_entry_id)
            except SQLAlchemyError as e:
                logger.error(
                    f"Provider accepted {tx.id} as {result.provider_txn_id} but the update did not commit: {e}",
                    extra=log_extra,
                )
                self._persist_provider_id(tx, result.provider_txn_id, log_extra)
            if result.settled:
                logger.info(f"✅ Payout {tx.id} succeeded", extra=log_extra)
                self._publish("PayoutSucceeded", tx, status="success", provider_txn_id=result.provider_txn_id)
                return self._receipt(tx, "success", "Transfer successful",
                                     provider_txn_id=result.provider_txn_id, rrn=result.rrn)
            logger.info(f"Payout {tx.id} accepted by provider as {result.provider_txn_id}", extra=log_extra)
            return self._receipt(tx, "processing", result.message or "Transfer initiated. Awaiting bank confirmation.",
                                 provider_txn_id=result.provider_txn_id)

        if not isinstance(result, TransferTimedOut):
            logger.error(f"Unexpected provider result {result!r} for {tx.id}", extra=log_extra)

        # Ambiguous: the transfer may be in flight, so funds stay committed
        try:
            self.store.confirm_debit(debit_entry_id)
        except InternalFailure as e:
            logger.error(f"Could not complete debit entry for {tx.id}: {e.message}", extra=log_extra)
        logger.warning(f"⏳ Payout {tx.id} outcome unknown; left for reconciliation", extra=log_extra)
        self._publish("PayoutProcessing", tx, status="processing",
                      reason=getattr(result, "reason", None), ambiguous=True)
        return self._receipt(tx, "processing", "Transfer is being processed. Status will be updated shortly.")

    async def get_status(self, merchant_id: str, transaction_id: str = None, client_ref_id: str = None,
                         refresh: bool = True) -> TransactionSnapshot:
        if not transaction_id and not client_ref_id:
            raise TransferValidationError("transaction_id or client_ref_id is required")
        if transaction_id:
            tx = self.store.get(transaction_id, merchant_id=merchant_id)
        else:
            tx = self.store.get_by_client_ref(client_ref_id, merchant_id=merchant_id)
        if tx is None:
            raise TransactionNotFound()

        if refresh and tx.status in OPEN_STATUSES and tx.provider_txn_id:
            try:
                await self.reconciler.resolve_one(tx)
                tx = self.store.get(tx.id) or tx
            except Exception as e:
                logger.warning(f"Status refresh failed for {tx.id}: {e}")
        return self.store.snapshot(tx)

    def list_recent_transactions(self, merchant_id: str, limit: int = 20) -> List[TransactionSnapshot]:
        limit = max(1, min(int(limit), 100))
        return [self.store.snapshot(tx) for tx in self.store.list_recent(merchant_id, limit)]

    def pending_count(self, merchant_id: str) -> int:
        return self.store.count_open(merchant_id)

    async def verify_account(self, request: AccountVerifyRequest) -> AccountVerifyResponse:
        """Ask the provider who holds an account before the merchant sends money to it."""
        if not (request.account_number or "").strip() or not (request.ifsc_code or "").strip():
            raise TransferValidationError("Account number and IFSC code are required")
        account_number, ifsc = normalize_account(request.account_number, request.ifsc_code)
        bank_name = (request.bank_name or "").strip() or None

        verification = await self.provider.verify_account(account_number, ifsc, bank_name)
        if not verification.is_valid:
            logger.info(f"Account {mask_account(account_number)} at {ifsc} failed verification: {verification.message}")
            raise AccountVerificationFailed(
                verification.message or "Account verification failed. Please check the account number and IFSC code."
            )
        return AccountVerifyResponse(
            is_valid=True,
            account_holder_name=verification.account_holder_name or "N/A",
            bank_name=verification.bank_name or bank_name or "N/A",
            branch_name=verification.branch_name or "N/A",
            verification_charges=self.settings.payout_verification_charge,
        )
