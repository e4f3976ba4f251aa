from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

class TransferRequest(BaseModel):
    account_number: str
    ifsc_code: str
    account_holder_name: str
    amount: Decimal
    transfer_mode: str
    bank_id: Optional[int] = None
    bank_name: str
    beneficiary_mobile: str
    sender_name: str
    sender_mobile: str
    sender_email: Optional[str] = None
    remarks: Optional[str] = None
    client_ref_id: Optional[str] = Field(default=None, max_length=64)

class AccountVerifyRequest(BaseModel):
    account_number: str
    ifsc_code: str
    bank_name: Optional[str] = None

class AccountVerifyResponse(BaseModel):
    success: bool = True
    is_valid: bool
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    verification_charges: Decimal
    message: str = "Account verified successfully"

class TransferReceipt(BaseModel):
    success: bool = True
    message: str
    status: str
    transaction_id: str
    client_ref_id: str
    provider_txn_id: Optional[str] = None
    rrn: Optional[str] = None
    amount: Decimal
    charges: Decimal
    total_debited: Decimal
    account_number: str
    account_holder_name: str
    bank_name: str
    transfer_mode: str
    scheme_name: Optional[str] = None
    replayed: bool = False

class TransactionSnapshot(BaseModel):
    id: str
    client_ref_id: str
    provider_txn_id: Optional[str] = None
    rrn: Optional[str] = None
    status: str
    amount: Decimal
    charges: Decimal
    total_amount: Decimal
    account_number: str
    account_holder_name: str
    bank_name: str
    transfer_mode: str
    scheme_name: Optional[str] = None
    failure_reason: Optional[str] = None
    remarks: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

class ReconcileRequest(BaseModel):
    merchant_id: Optional[str] = None
    transaction_ids: Optional[List[str]] = None
    include_details: bool = False

class ReconcileResult(BaseModel):
    id: str
    previous_status: str
    new_status: str
    action: str

class ReconcileSummary(BaseModel):
    success: bool = True
    checked: int = 0
    resolved: int = 0
    refunded: int = 0
    still_pending: int = 0
    results: Optional[List[ReconcileResult]] = None

class WalletCredit(BaseModel):
    amount: Decimal = Field(gt=0)
    reference_id: str
    remarks: Optional[str] = None

class PayoutEvent(BaseModel):
    type: Literal["PayoutInitiated", "PayoutProcessing", "PayoutSucceeded", "PayoutFailed", "PayoutRefunded"]
    transaction_id: str
    merchant_id: str
    client_ref_id: str
    amount: Decimal
    charges: Decimal
    status: str
    provider_txn_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
