"""
PayoutTransaction store.

Rows are created pending by the orchestrator and only ever move forward through
compare-and-set updates guarded by the current status, so the live request path
and the reconciler can race on the same row without double-applying a transition.
"""
import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from common.schemas import TransactionSnapshot
from payout_service.models import (
    ENTRY_COMPLETED, ENTRY_FAILED, OPEN_STATUSES, PROCESSING, PENDING, SUCCESS,
    PayoutTransaction, utcnow,
)
from payout_service.wallet import WalletLedgerGateway

logger = logging.getLogger(__name__)

def mask_account(account_number: str) -> str:
    """All but the last four digits replaced with '*'."""
    return re.sub(r"\d(?=\d{4})", "*", account_number or "")

def refund_reference(client_ref_id: str, auto: bool = False) -> str:
    return f"REFUND_TIMEOUT_{client_ref_id}" if auto else f"REFUND_{client_ref_id}"

class TransactionStore:
    def __init__(self, session_factory: sessionmaker, wallet: WalletLedgerGateway):
        self.session_factory = session_factory
        self.wallet = wallet

    # Queries

    def get(self, transaction_id: str, merchant_id: str = None) -> Optional[PayoutTransaction]:
        with self.session_factory() as db:
            stmt = select(PayoutTransaction).where(PayoutTransaction.id == transaction_id)
            if merchant_id:
                stmt = stmt.where(PayoutTransaction.merchant_id == merchant_id)
            return db.execute(stmt).scalars().first()

    def get_by_client_ref(self, client_ref_id: str, merchant_id: str = None) -> Optional[PayoutTransaction]:
        with self.session_factory() as db:
            stmt = select(PayoutTransaction).where(PayoutTransaction.client_ref_id == client_ref_id)
            if merchant_id:
                stmt = stmt.where(PayoutTransaction.merchant_id == merchant_id)
            return db.execute(stmt).scalars().first()

    def list_recent(self, merchant_id: str, limit: int = 20) -> List[PayoutTransaction]:
        with self.session_factory() as db:
            return list(db.execute(
                select(PayoutTransaction)
                .where(PayoutTransaction.merchant_id == merchant_id)
                .order_by(PayoutTransaction.created_at.desc())
                .limit(limit)
            ).scalars())

    def count_open(self, merchant_id: str) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count())
                .select_from(PayoutTransaction)
                .where(PayoutTransaction.merchant_id == merchant_id, PayoutTransaction.status.in_(OPEN_STATUSES))
            ).scalar_one()

    def select_stale(self, older_than: datetime, merchant_id: str = None,
                     transaction_ids: Iterable[str] = None, limit: int = 50) -> List[PayoutTransaction]:
        """Open transactions created before older_than, oldest first."""
        stmt = select(PayoutTransaction).where(
            PayoutTransaction.status.in_(OPEN_STATUSES),
            PayoutTransaction.created_at < older_than,
        )
        if merchant_id:
            stmt = stmt.where(PayoutTransaction.merchant_id == merchant_id)
        if transaction_ids:
            stmt = stmt.where(PayoutTransaction.id.in_(list(transaction_ids)))
        with self.session_factory() as db:
            return list(db.execute(stmt.order_by(PayoutTransaction.created_at.asc()).limit(limit)).scalars())

    # Writes

    def add_pending(self, db: Session, **fields) -> PayoutTransaction:
        """Insert a pending row inside the caller's transaction."""
        tx = PayoutTransaction(status=PENDING, wallet_debited=False, **fields)
        db.add(tx)
        db.flush()
        return tx

    def _transition(self, db: Session, transaction_id: str, from_statuses, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        result = db.execute(
            update(PayoutTransaction)
            .where(PayoutTransaction.id == transaction_id, PayoutTransaction.status.in_(list(from_statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_processing(self, transaction_id: str) -> bool:
        with self.session_factory() as db, db.begin():
            return self._transition(db, transaction_id, [PENDING], status=PROCESSING)

    def record_acceptance(self, transaction_id: str, provider_txn_id: str, debit_entry_id: str = None) -> bool:
        """Provider acknowledged but has not settled: keep processing, store its id."""
        with self.session_factory() as db, db.begin():
            changed = self._transition(db, transaction_id, [PROCESSING], provider_txn_id=provider_txn_id)
            if changed and debit_entry_id:
                self.wallet.mark_entry_status(debit_entry_id, ENTRY_COMPLETED, db=db)
            return changed

    def attach_provider_id(self, transaction_id: str, provider_txn_id: str) -> bool:
        """Store only the provider id on an open row that does not have one yet."""
        with self.session_factory() as db, db.begin():
            result = db.execute(
                update(PayoutTransaction)
                .where(
                    PayoutTransaction.id == transaction_id,
                    PayoutTransaction.status.in_(list(OPEN_STATUSES)),
                    PayoutTransaction.provider_txn_id.is_(None),
                )
                .values(provider_txn_id=provider_txn_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def mark_success(self, transaction_id: str, provider_txn_id: str = None, rrn: str = None,
                     debit_entry_id: str = None) -> bool:
        values = {"status": SUCCESS, "completed_at": utcnow()}
        if provider_txn_id:
            values["provider_txn_id"] = provider_txn_id
        if rrn:
            values["rrn"] = rrn
        with self.session_factory() as db, db.begin():
            changed = self._transition(db, transaction_id, OPEN_STATUSES, **values)
            if changed and debit_entry_id:
                self.wallet.mark_entry_status(debit_entry_id, ENTRY_COMPLETED, db=db)
            return changed

    def confirm_debit(self, debit_entry_id: str) -> None:
        self.wallet.mark_entry_status(debit_entry_id, ENTRY_COMPLETED)

    def close_with_refund(self, transaction_id: str, to_status: str, reason: str, reference: str,
                          provider_txn_id: str = None) -> bool:
        """Move an open transaction to a refunded terminal state and credit the wallet.

        Status change, refund entry and debit-entry failure commit together. Returns
        False without touching the ledger when the row already left the open states.
        """
        values = {"status": to_status, "failure_reason": reason, "completed_at": utcnow()}
        if provider_txn_id:
            values["provider_txn_id"] = provider_txn_id
        with self.session_factory() as db, db.begin():
            tx = db.execute(
                select(PayoutTransaction).where(PayoutTransaction.id == transaction_id).with_for_update()
            ).scalars().first()
            if tx is None or not self._transition(db, transaction_id, OPEN_STATUSES, **values):
                logger.info(f"Transaction {transaction_id} already closed; no refund issued")
                return False
            if tx.wallet_debited:
                self.wallet.refund(
                    tx.merchant_id,
                    tx.id,
                    tx.total_debited,
                    description=f"Refund for payout {tx.client_ref_id}: {reason}"[:512],
                    reference=reference,
                    db=db,
                )
                if tx.wallet_debit_id:
                    self.wallet.mark_entry_status(tx.wallet_debit_id, ENTRY_FAILED, db=db)
        logger.info(
            f"Transaction {transaction_id} closed as {to_status}",
            extra={"transaction_id": transaction_id, "reason": reason},
        )
        return True

    @staticmethod
    def snapshot(tx: PayoutTransaction) -> TransactionSnapshot:
        return TransactionSnapshot(
            id=tx.id,
            client_ref_id=tx.client_ref_id,
            provider_txn_id=tx.provider_txn_id,
            rrn=tx.rrn,
            status=tx.status,
            amount=tx.amount,
            charges=tx.charges,
            total_amount=tx.total_debited,
            account_number=mask_account(tx.account_number),
            account_holder_name=tx.account_holder_name,
            bank_name=tx.bank_name,
            transfer_mode=tx.transfer_mode,
            scheme_name=tx.scheme_name,
            failure_reason=tx.failure_reason,
            remarks=tx.remarks,
            created_at=tx.created_at,
            completed_at=tx.completed_at,
        )
