"""
Status & Reconciliation Job

Converges transactions left open after an ambiguous provider outcome. Only rows
older than the staleness threshold are touched, and every transition goes through
the store's compare-and-set writes, so runs are idempotent and safe next to live
transfers.

A transaction with a provider id is polled and adopts the provider's terminal
status. One without a provider id is only refunded after the long auto-refund
quarantine, since the provider may have acted without us learning its id.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from common.schemas import ReconcileResult, ReconcileSummary
from common.settings import Settings, settings as default_settings
from common.tracing import reconcile_tracer
from payout_service.errors import ProviderTimeout, ProviderUnavailable
from payout_service.events import PayoutEventPublisher
from payout_service.models import FAILED, REFUNDED, PayoutTransaction, utcnow
from payout_service.provider_client import ResilientProvider
from payout_service.transactions import TransactionStore, refund_reference

logger = logging.getLogger(__name__)

STATUS_UPDATED = "status_updated"
AUTO_REFUND_FAILED = "auto_refund_failed"
AUTO_REFUND_TIMEOUT = "auto_refund_timeout"
STILL_PENDING = "still_pending"
PROVIDER_CHECK_FAILED = "provider_check_failed"
NO_PROVIDER_ACK_WAITING = "no_provider_ack_waiting"
ERROR = "error"

RESOLVED_ACTIONS = (STATUS_UPDATED, AUTO_REFUND_FAILED, AUTO_REFUND_TIMEOUT)
REFUND_ACTIONS = (AUTO_REFUND_FAILED, AUTO_REFUND_TIMEOUT)

class Reconciler:
    def __init__(self, store: TransactionStore, provider: ResilientProvider,
                 events: PayoutEventPublisher = None, settings: Settings = None):
        self.store = store
        self.provider = provider
        self.events = events
        self.settings = settings or default_settings

    def _publish(self, event_type: str, tx: PayoutTransaction, status: str, **kwargs):
        if self.events is not None:
            self.events.publish_for(event_type, tx, status=status, **kwargs)

    def _result(self, tx: PayoutTransaction, new_status: str, action: str) -> ReconcileResult:
        return ReconcileResult(id=tx.id, previous_status=tx.status, new_status=new_status, action=action)

    async def resolve_one(self, tx: PayoutTransaction, now: datetime = None) -> ReconcileResult:
        """Apply one reconciliation decision to an open transaction."""
        now = now or utcnow()
        if tx.provider_txn_id:
            try:
                report = await self.provider.get_status(tx.provider_txn_id)
            except (ProviderUnavailable, ProviderTimeout) as e:
                logger.warning(f"Status check failed for {tx.id}: {e.message}", extra={"transaction_id": tx.id})
                return self._result(tx, tx.status, PROVIDER_CHECK_FAILED)

            if not report.terminal:
                return self._result(tx, tx.status, STILL_PENDING)

            if report.status == "success":
                if self.store.mark_success(tx.id, rrn=report.rrn, debit_entry_id=tx.wallet_debit_id):
                    logger.info(f"✅ {tx.id} confirmed successful by provider", extra={"rrn": report.rrn})
                    self._publish("PayoutSucceeded", tx, "success")
                current = self.store.get(tx.id)
                return self._result(tx, current.status if current else "success", STATUS_UPDATED)

            reason = report.message or "Transfer failed at provider"
            if self.store.close_with_refund(tx.id, FAILED, reason, refund_reference(tx.client_ref_id)):
                logger.info(f"↩️ {tx.id} failed at provider; refunded {tx.total_debited}")
                self._publish("PayoutFailed", tx, FAILED, reason=reason, refunded=True)
            current = self.store.get(tx.id)
            return self._result(tx, current.status if current else FAILED, AUTO_REFUND_FAILED)

        hours = self.settings.reconcile_auto_refund_hours
        if now - tx.created_at >= timedelta(hours=hours):
            reason = f"Auto-refunded: no provider acknowledgement after {hours} hours"
            if self.store.close_with_refund(tx.id, REFUNDED, reason, refund_reference(tx.client_ref_id, auto=True)):
                logger.warning(f"{tx.id} auto-refunded after {hours}h without provider id",
                               extra={"transaction_id": tx.id, "merchant_id": tx.merchant_id})
                self._publish("PayoutRefunded", tx, REFUNDED, reason=reason)
            current = self.store.get(tx.id)
            return self._result(tx, current.status if current else REFUNDED, AUTO_REFUND_TIMEOUT)

        return self._result(tx, tx.status, NO_PROVIDER_ACK_WAITING)

    async def reconcile(self, merchant_id: str = None, transaction_ids: Optional[Iterable[str]] = None,
                        include_details: bool = False, now: datetime = None) -> ReconcileSummary:
        now = now or utcnow()
        older_than = now - timedelta(minutes=self.settings.reconcile_stale_minutes)

        with reconcile_tracer.start_span("reconcile") as span:
            batch = self.store.select_stale(
                older_than,
                merchant_id=merchant_id,
                transaction_ids=transaction_ids,
                limit=self.settings.reconcile_batch_size,
            )
            span.add_tag("batch.size", len(batch))

            summary = ReconcileSummary(checked=len(batch))
            results = []
            for tx in batch:
                try:
                    result = await self.resolve_one(tx, now=now)
                except Exception as e:
                    logger.exception(f"Reconciliation failed for {tx.id}: {e}")
                    result = self._result(tx, tx.status, ERROR)
                results.append(result)

                if result.action in RESOLVED_ACTIONS:
                    summary.resolved += 1
                    if result.action in REFUND_ACTIONS:
                        summary.refunded += 1
                else:
                    summary.still_pending += 1

            span.add_tag("resolved", summary.resolved)
            span.add_tag("refunded", summary.refunded)

        if include_details:
            summary.results = results
        logger.info(
            f"Reconciliation checked={summary.checked} resolved={summary.resolved} "
            f"refunded={summary.refunded} still_pending={summary.still_pending}"
        )
        return summary
