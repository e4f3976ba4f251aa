import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request

from common.circuit_breaker import get_all_circuit_breakers
from common.error_handling import add_error_handlers
from common.redis_client import redis_client
from common.schemas import AccountVerifyRequest, ReconcileRequest, TransferRequest, WalletCredit
from common.security import verify_token
from common.settings import settings
from common.tracing import payout_tracer, tracing_middleware
from payout_service.db import SessionLocal, engine
from payout_service.events import PayoutEventPublisher
from payout_service.models import Base
from payout_service.orchestrator import TransferOrchestrator
from payout_service.provider_client import PayoutProviderClient, ResilientProvider, filter_banks
from payout_service.reconciler import Reconciler
from payout_service.transactions import TransactionStore
from payout_service.wallet import WalletLedgerGateway

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info(f"🚀 Payout service starting (mock provider: {settings.payout_mock_mode})")
    yield

app = FastAPI(title="Payout Service", lifespan=lifespan)
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, payout_tracer)

# Collaborators; tests replace these through app.dependency_overrides

@lru_cache(maxsize=1)
def get_provider() -> ResilientProvider:
    return ResilientProvider(PayoutProviderClient(settings), cache=redis_client, settings=settings)

@lru_cache(maxsize=1)
def get_events() -> PayoutEventPublisher:
    return PayoutEventPublisher()

def get_wallet() -> WalletLedgerGateway:
    return WalletLedgerGateway(SessionLocal)

def get_orchestrator(provider: ResilientProvider = Depends(get_provider),
                     events: PayoutEventPublisher = Depends(get_events)) -> TransferOrchestrator:
    return TransferOrchestrator(SessionLocal, provider, events, settings)

def get_reconciler(provider: ResilientProvider = Depends(get_provider),
                   events: PayoutEventPublisher = Depends(get_events)) -> Reconciler:
    store = TransactionStore(SessionLocal, WalletLedgerGateway(SessionLocal))
    return Reconciler(store, provider, events, settings)

# Auth

def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    return authorization.split(" ", 1)[1]

async def merchant_auth(authorization: Optional[str] = Header(None)) -> str:
    """Returns the merchant id carried in the token subject."""
    try:
        claims = verify_token(_bearer(authorization))
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")
    if claims.get("scope") != "merchant":
        raise HTTPException(401, "token is not a merchant token")
    if not claims.get("sub"):
        raise HTTPException(401, "token has no subject")
    return claims["sub"]

async def internal_auth(authorization: Optional[str] = Header(None)):
    try:
        verify_token(_bearer(authorization), audience="payout")
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid internal token: {e}")

async def reconcile_auth(authorization: Optional[str] = Header(None),
                         x_cron_secret: Optional[str] = Header(None)) -> str:
    """Scheduler calls present x-cron-secret; operators use an internal token."""
    if x_cron_secret and settings.cron_secret and hmac.compare_digest(x_cron_secret, settings.cron_secret):
        return "cron"
    await internal_auth(authorization)
    return "internal"

# Payouts

@app.post("/payout/transfer")
async def transfer(req: TransferRequest, merchant_id: str = Depends(merchant_auth),
                   orchestrator: TransferOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.submit_transfer(merchant_id, req)

@app.post("/payout/verify")
async def verify_account(req: AccountVerifyRequest, merchant_id: str = Depends(merchant_auth),
                         orchestrator: TransferOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.verify_account(req)

@app.get("/payout/status")
async def transfer_status(transaction_id: Optional[str] = None, client_ref_id: Optional[str] = None,
                          merchant_id: str = Depends(merchant_auth),
                          orchestrator: TransferOrchestrator = Depends(get_orchestrator)):
    snapshot = await orchestrator.get_status(merchant_id, transaction_id=transaction_id, client_ref_id=client_ref_id)
    return {"success": True, "transaction": snapshot}

@app.get("/payout/transactions")
async def recent_transactions(limit: int = Query(20, ge=1, le=100), merchant_id: str = Depends(merchant_auth),
                              orchestrator: TransferOrchestrator = Depends(get_orchestrator)):
    transactions = orchestrator.list_recent_transactions(merchant_id, limit)
    return {"success": True, "transactions": transactions, "count": len(transactions)}

@app.get("/payout/pending-count")
async def pending_count(merchant_id: str = Depends(merchant_auth),
                        orchestrator: TransferOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "pending_count": orchestrator.pending_count(merchant_id)}

@app.get("/payout/banks")
async def banks(imps_only: bool = False, neft_only: bool = False, popular_only: bool = False,
                search: Optional[str] = None, merchant_id: str = Depends(merchant_auth),
                provider: ResilientProvider = Depends(get_provider)):
    bank_list = filter_banks(await provider.list_banks(), imps_only, neft_only, popular_only, search)
    return {"success": True, "banks": [asdict(b) for b in bank_list], "count": len(bank_list)}

@app.get("/payout/provider-balance")
async def provider_balance(merchant_id: str = Depends(merchant_auth),
                           provider: ResilientProvider = Depends(get_provider)):
    balance = await provider.get_balance()
    return {
        "success": True,
        "balance": balance.balance,
        "lien": balance.lien,
        "available_balance": balance.available,
    }

@app.post("/payout/reconcile")
async def reconcile(req: Optional[ReconcileRequest] = None, caller: str = Depends(reconcile_auth),
                    reconciler: Reconciler = Depends(get_reconciler)):
    req = req or ReconcileRequest()
    logger.info(f"Reconciliation triggered by {caller}")
    return await reconciler.reconcile(
        merchant_id=req.merchant_id,
        transaction_ids=req.transaction_ids,
        include_details=req.include_details or caller == "cron",
    )

# Wallet

@app.get("/wallet/balance")
async def wallet_balance(merchant_id: str = Depends(merchant_auth), wallet: WalletLedgerGateway = Depends(get_wallet)):
    return {"success": True, "merchant_id": merchant_id, "balance": wallet.balance(merchant_id)}

@app.post("/internal/wallets/{merchant_id}/credit", dependencies=[Depends(internal_auth)])
async def credit_wallet(merchant_id: str, req: WalletCredit, wallet: WalletLedgerGateway = Depends(get_wallet)):
    entry_id = wallet.credit(merchant_id, req.amount, req.reference_id, req.remarks)
    return {"success": True, "entry_id": entry_id, "balance": wallet.balance(merchant_id)}

@app.get("/health")
async def health():
    return {"status": "ok", "circuit_breakers": get_all_circuit_breakers()}
