"""
Periodic reconciliation runner.

    python -m payout_service.reconcile_worker          # every RECONCILE_INTERVAL_MINUTES
    python -m payout_service.reconcile_worker --once   # single pass, then exit
"""
import asyncio
import logging
import sys
import time

import schedule

from common.redis_client import redis_client
from common.settings import settings
from payout_service.db import SessionLocal
from payout_service.events import PayoutEventPublisher
from payout_service.provider_client import PayoutProviderClient, ResilientProvider
from payout_service.reconciler import Reconciler
from payout_service.transactions import TransactionStore
from payout_service.wallet import WalletLedgerGateway

logger = logging.getLogger(__name__)

def build_reconciler() -> Reconciler:
    store = TransactionStore(SessionLocal, WalletLedgerGateway(SessionLocal))
    provider = ResilientProvider(PayoutProviderClient(settings), cache=redis_client, settings=settings)
    return Reconciler(store, provider, PayoutEventPublisher(), settings)

def run_once(reconciler: Reconciler):
    try:
        summary = asyncio.run(reconciler.reconcile(include_details=True))
    except Exception as e:
        logger.exception(f"Reconciliation run failed: {e}")
        return None
    for result in summary.results or []:
        if result.action != "still_pending":
            logger.info(f"{result.id}: {result.previous_status} -> {result.new_status} ({result.action})")
    return summary

def schedule_reconciliation(reconciler: Reconciler):
    schedule.every(settings.reconcile_interval_minutes).minutes.do(run_once, reconciler)
    logger.info(f"Reconciliation scheduled every {settings.reconcile_interval_minutes} minutes")

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    reconciler = build_reconciler()
    if len(sys.argv) > 1 and sys.argv[1] == "--once":
        run_once(reconciler)
    else:
        schedule_reconciliation(reconciler)
        logger.info("Reconciliation worker started. Press Ctrl+C to stop.")
        try:
            while True:
                schedule.run_pending()
                time.sleep(10)
        except KeyboardInterrupt:
            logger.info("Reconciliation worker stopped.")
