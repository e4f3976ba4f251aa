import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from payout_service.models import DUPLICATE_GUARD_STATUSES, PayoutTransaction, utcnow

logger = logging.getLogger(__name__)

@dataclass
class DuplicateCheck:
    blocked: bool
    remaining_wait_seconds: int = 0
    elapsed_seconds: int = 0
    prior_transaction: Optional[Dict[str, Any]] = None

class DuplicateGuard:
    """Rejects a resubmission to the same destination inside a trailing window.

    Only a safety net against double clicks and client retries; it is not a lock.
    """

    def __init__(self, session_factory: sessionmaker, window_seconds: int = 120):
        self.session_factory = session_factory
        self.window_seconds = window_seconds

    def check(self, merchant_id: str, destination_account: str, window_seconds: int = None,
              now: datetime = None) -> DuplicateCheck:
        window = window_seconds if window_seconds is not None else self.window_seconds
        now = now or utcnow()
        with self.session_factory() as db:
            prior = db.execute(
                select(PayoutTransaction)
                .where(
                    PayoutTransaction.merchant_id == merchant_id,
                    PayoutTransaction.account_number == destination_account,
                    PayoutTransaction.status.in_(DUPLICATE_GUARD_STATUSES),
                    PayoutTransaction.created_at >= now - timedelta(seconds=window),
                )
                .order_by(PayoutTransaction.created_at.desc())
                .limit(1)
            ).scalars().first()

        if prior is None:
            return DuplicateCheck(blocked=False)

        elapsed = max(0.0, (now - prior.created_at).total_seconds())
        remaining = max(1, math.ceil(window - elapsed))
        logger.warning(
            f"Duplicate transfer blocked; prior {prior.id} is {int(elapsed)}s old",
            extra={"merchant_id": merchant_id, "transaction_id": prior.id},
        )
        return DuplicateCheck(
            blocked=True,
            remaining_wait_seconds=remaining,
            elapsed_seconds=int(elapsed),
            prior_transaction={
                "id": prior.id,
                "client_ref_id": prior.client_ref_id,
                "status": prior.status,
                "amount": prior.amount,
                "created_at": prior.created_at,
            },
        )
