"""
Payout error taxonomy.

Everything raised before funds are reserved is side-effect free. ProviderRejected
is only raised after the refund for the transaction has been written.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from common.error_handling import BusinessLogicError, ErrorCodes, ServiceError

class TransferValidationError(BusinessLogicError):
    def __init__(self, message: str, field: Optional[str] = None, context: Dict[str, Any] = None):
        super().__init__(ErrorCodes.VALIDATION_ERROR, message, field=field, context=context)

class DuplicateRequest(BusinessLogicError):
    def __init__(self, message: str, wait_seconds: int, recent_transaction: Dict[str, Any]):
        self.wait_seconds = wait_seconds
        super().__init__(
            ErrorCodes.DUPLICATE_REQUEST,
            message,
            context={
                "duplicate_prevention": True,
                "wait_seconds": wait_seconds,
                "recent_transaction": recent_transaction,
            },
        )

class InsufficientFunds(BusinessLogicError):
    def __init__(self, balance: Decimal, required: Decimal, amount: Decimal = None, charges: Decimal = None):
        self.balance = balance
        self.required = required
        context = {"wallet_balance": balance, "total_required": required}
        if amount is not None:
            context["amount"] = amount
        if charges is not None:
            context["charges"] = charges
        super().__init__(ErrorCodes.INSUFFICIENT_FUNDS, "Insufficient wallet balance", context=context)

class ProviderUnderfunded(BusinessLogicError):
    def __init__(self, available: Decimal, required: Decimal):
        super().__init__(
            ErrorCodes.PROVIDER_UNDERFUNDED,
            "Payout service temporarily unavailable. Please try again later.",
            context={"retry_later": True},
        )
        self.available = available
        self.required = required

class ProviderRejected(BusinessLogicError):
    def __init__(self, message: str, transaction_id: str, client_ref_id: str):
        super().__init__(
            ErrorCodes.PROVIDER_REJECTED,
            message or "Transfer failed",
            context={"transaction_id": transaction_id, "client_ref_id": client_ref_id, "refunded": True},
        )

class AccountVerificationFailed(BusinessLogicError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(ErrorCodes.ACCOUNT_VERIFICATION_FAILED, message, field=field, context={"is_valid": False})

class TransactionNotFound(BusinessLogicError):
    def __init__(self, message: str = "Transaction not found"):
        super().__init__(ErrorCodes.TRANSACTION_NOT_FOUND, message)

class ProviderUnavailable(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.SERVICE_UNAVAILABLE, message, original_error)

class ProviderTimeout(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.TIMEOUT_ERROR, message, original_error)

class InternalFailure(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.INTERNAL_SERVER_ERROR, message, original_error)
