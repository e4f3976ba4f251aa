"""
Wallet Ledger Gateway

Atomic fund movements against a merchant's primary wallet. Each movement is one
append-only ledger row plus a conditional balance update executed by the
database, inside a single transaction that also holds the wallet row lock.
"""
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from payout_service.errors import InsufficientFunds, InternalFailure
from payout_service.models import (
    CREDIT, DEBIT, ENTRY_COMPLETED, ENTRY_PENDING, REFUND,
    LedgerEntry, PayoutTransaction, Wallet, money, new_id,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

class WalletLedgerGateway:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _unit_of_work(self, db: Optional[Session]) -> Iterator[Session]:
        """Join the caller's transaction when given one, otherwise own a new one."""
        if db is not None:
            yield db
            return
        try:
            with self.session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error(f"Ledger write failed: {e}")
            raise InternalFailure("Ledger write failed", original_error=e)

    def _lock_wallet(self, session: Session, merchant_id: str) -> Optional[Wallet]:
        return session.execute(
            select(Wallet).where(Wallet.owner_id == merchant_id).with_for_update()
        ).scalar_one_or_none()

    def _current_balance(self, session: Session, merchant_id: str) -> Decimal:
        value = session.execute(
            select(Wallet.balance).where(Wallet.owner_id == merchant_id)
        ).scalar_one_or_none()
        return money(value) if value is not None else ZERO

    def _existing_entry(self, session: Session, transaction_id: str, tx_type: str) -> Optional[str]:
        return session.execute(
            select(LedgerEntry.id)
            .where(LedgerEntry.transaction_id == transaction_id, LedgerEntry.tx_type == tx_type)
            .limit(1)
        ).scalar_one_or_none()

    def balance(self, merchant_id: str) -> Decimal:
        with self.session_factory() as session:
            return self._current_balance(session, merchant_id)

    def reserve(
        self,
        merchant_id: str,
        transaction_id: str,
        total_amount: Decimal,
        description: str,
        reference: str,
        db: Optional[Session] = None,
    ) -> str:
        """Debit total_amount for one payout attempt and return the ledger entry id.

        The balance check is the WHERE clause of the debit itself, so two
        reservations for the same merchant can never both pass on the same funds.
        Calling again for the same transaction returns the original entry.
        """
        total_amount = money(total_amount)
        with self._unit_of_work(db) as session:
            existing = self._existing_entry(session, transaction_id, DEBIT)
            if existing:
                logger.info(f"Reservation already exists for transaction {transaction_id}")
                return existing

            wallet = self._lock_wallet(session, merchant_id)
            if wallet is None:
                raise InsufficientFunds(balance=ZERO, required=total_amount)

            result = session.execute(
                update(Wallet)
                .where(Wallet.owner_id == merchant_id, Wallet.balance >= total_amount)
                .values(balance=Wallet.balance - total_amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                balance = self._current_balance(session, merchant_id)
                logger.warning(
                    f"Insufficient funds: balance={balance}, required={total_amount}",
                    extra={"merchant_id": merchant_id, "transaction_id": transaction_id},
                )
                raise InsufficientFunds(balance=balance, required=total_amount)

            entry_id = new_id()
            session.add(LedgerEntry(
                id=entry_id,
                owner_id=merchant_id,
                tx_type=DEBIT,
                debit=total_amount,
                credit=ZERO,
                balance_after=self._current_balance(session, merchant_id),
                reference_id=reference,
                transaction_id=transaction_id,
                status=ENTRY_PENDING,
                remarks=description,
            ))
            # wallet_debited flips in the same transaction as the debit row
            session.execute(
                update(PayoutTransaction)
                .where(PayoutTransaction.id == transaction_id)
                .values(wallet_debited=True, wallet_debit_id=entry_id)
                .execution_options(synchronize_session=False)
            )
            session.flush()

        logger.info(f"💰 Reserved {total_amount} for transaction {transaction_id}", extra={"merchant_id": merchant_id})
        return entry_id

    def refund(
        self,
        merchant_id: str,
        transaction_id: str,
        total_amount: Decimal,
        description: str,
        reference: str,
        db: Optional[Session] = None,
    ) -> str:
        """Credit total_amount back for a transaction. Never capacity-checked; at most one per transaction."""
        total_amount = money(total_amount)
        with self._unit_of_work(db) as session:
            existing = self._existing_entry(session, transaction_id, REFUND)
            if existing:
                logger.info(f"Refund already recorded for transaction {transaction_id}")
                return existing

            if self._lock_wallet(session, merchant_id) is None:
                session.add(Wallet(owner_id=merchant_id, balance=ZERO))
                session.flush()

            session.execute(
                update(Wallet)
                .where(Wallet.owner_id == merchant_id)
                .values(balance=Wallet.balance + total_amount)
                .execution_options(synchronize_session=False)
            )
            entry_id = new_id()
            session.add(LedgerEntry(
                id=entry_id,
                owner_id=merchant_id,
                tx_type=REFUND,
                credit=total_amount,
                debit=ZERO,
                balance_after=self._current_balance(session, merchant_id),
                reference_id=reference,
                transaction_id=transaction_id,
                status=ENTRY_COMPLETED,
                remarks=description,
            ))
            session.flush()

        logger.info(f"↩️ Refunded {total_amount} for transaction {transaction_id}", extra={"merchant_id": merchant_id})
        return entry_id

    def credit(self, merchant_id: str, amount: Decimal, reference: str, remarks: str = None) -> str:
        """Fund a wallet (top-up); creates the wallet row on first credit."""
        amount = money(amount)
        with self._unit_of_work(None) as session:
            if self._lock_wallet(session, merchant_id) is None:
                session.add(Wallet(owner_id=merchant_id, balance=ZERO))
                session.flush()
            session.execute(
                update(Wallet)
                .where(Wallet.owner_id == merchant_id)
                .values(balance=Wallet.balance + amount)
                .execution_options(synchronize_session=False)
            )
            entry_id = new_id()
            session.add(LedgerEntry(
                id=entry_id,
                owner_id=merchant_id,
                tx_type=CREDIT,
                fund_category="topup",
                credit=amount,
                debit=ZERO,
                balance_after=self._current_balance(session, merchant_id),
                reference_id=reference,
                status=ENTRY_COMPLETED,
                remarks=remarks,
            ))
            session.flush()
        return entry_id

    def mark_entry_status(self, entry_id: str, status: str, db: Optional[Session] = None) -> None:
        """Bounded status transition pending -> completed|failed; amounts are never touched."""
        with self._unit_of_work(db) as session:
            session.execute(
                update(LedgerEntry)
                .where(LedgerEntry.id == entry_id, LedgerEntry.status == ENTRY_PENDING)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )

    def entries_for(self, transaction_id: str) -> List[LedgerEntry]:
        with self.session_factory() as session:
            return list(session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.transaction_id == transaction_id)
                .order_by(LedgerEntry.created_at)
            ).scalars())
