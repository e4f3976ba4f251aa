"""
Provider Client

Request/response mapping for the external bank-transfer API (Express Pay payout).
Every operation returns a tagged result type; transport failures are mapped onto
those results here so callers never inspect raw payloads.

PayoutProviderClient is synchronous (requests). ResilientProvider wraps it for the
async service: a circuit breaker for every call, retries for read-only queries and
a hard caller-side budget for transfer initiation, which is never retried.
"""
import asyncio
import logging
import random
import string
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, provider_circuit_breaker
from common.retry import PROVIDER_QUERY_RETRY_CONFIG, RetryConfig, TransientCallError, retry_async
from common.settings import Settings, settings as default_settings
from common.tracing import get_trace_headers
from payout_service.errors import ProviderTimeout, ProviderUnavailable
from payout_service.transactions import mask_account

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10
AMBIGUOUS_HTTP_STATUSES = (502, 504)

# Provider status codes for statusCheck
STATUS_CODES = {2: "success", 1: "pending", 0: "failed"}

@dataclass(frozen=True)
class TransferInstruction:
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
    client_ref_id: str
    sender_email: Optional[str] = None
    remarks: Optional[str] = None

@dataclass(frozen=True)
class TransferAccepted:
    provider_txn_id: str
    status: str  # success | pending
    message: str = ""
    rrn: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status == "success"

@dataclass(frozen=True)
class TransferRejected:
    reason: str
    sent: bool = True
    provider_txn_id: Optional[str] = None
    http_status: Optional[int] = None

@dataclass(frozen=True)
class TransferTimedOut:
    reason: str

TransferResult = Union[TransferAccepted, TransferRejected, TransferTimedOut]

@dataclass(frozen=True)
class StatusReport:
    provider_txn_id: str
    status: str  # success | pending | failed
    message: Optional[str] = None
    rrn: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in ("success", "failed")

@dataclass(frozen=True)
class FloatBalance:
    balance: Decimal
    lien: Decimal = Decimal("0")

    @property
    def available(self) -> Decimal:
        return self.balance - self.lien

@dataclass(frozen=True)
class AccountVerification:
    account_number: str
    ifsc_code: str
    is_valid: bool
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    provider_ref: Optional[str] = None
    message: Optional[str] = None

@dataclass(frozen=True)
class Bank:
    bank_id: int
    bank_name: str
    code: Optional[str] = None
    ifsc: Optional[str] = None
    imps_enabled: bool = True
    neft_enabled: bool = True
    popular: bool = False

class ProviderCallError(TransientCallError):
    """A read-only provider query failed; safe to retry."""
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code

MOCK_BANKS = [
    Bank(1, "State Bank of India", "SBIN", "SBIN0000001", True, True, True),
    Bank(2, "HDFC Bank", "HDFC", "HDFC0000001", True, True, True),
    Bank(3, "ICICI Bank", "ICIC", "ICIC0000001", True, True, True),
    Bank(4, "Axis Bank", "UTIB", "UTIB0000001", True, True, True),
    Bank(5, "Punjab National Bank", "PUNB", "PUNB0000001", True, True, False),
]

def api_request_id() -> int:
    """16-digit numeric request id required by expressPay2."""
    return int(f"{int(time.time() * 1000)}{random.randint(0, 9999)}"[:16])

def normalize_transfer_status(value: Any) -> str:
    status = str(value or "pending").strip().lower()
    if status in ("success", "successful", "completed"):
        return "success"
    if status in ("failed", "failure", "rejected"):
        return "failed"
    return "pending"

def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)

class PayoutProviderClient:
    def __init__(self, settings: Settings = None, session: requests.Session = None):
        self.settings = settings or default_settings
        self.base_url = self.settings.payout_api_base_url.rstrip("/")
        self.session = session or requests.Session()

    @property
    def mock_mode(self) -> bool:
        return self.settings.payout_mock_mode

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "partnerid": self.settings.payout_partner_id,
            "consumerkey": self.settings.payout_consumer_key,
            "consumersecret": self.settings.payout_consumer_secret,
        }
        headers.update(get_trace_headers())
        return headers

    def _send(self, method: str, endpoint: str, body: Dict = None, params: Dict = None) -> requests.Response:
        return self.session.request(
            method,
            f"{self.base_url}{endpoint}",
            json=body,
            params=params,
            headers=self._headers(),
            timeout=(CONNECT_TIMEOUT_SECONDS, self.settings.payout_api_timeout_seconds),
        )

    def _query(self, method: str, endpoint: str, body: Dict = None, params: Dict = None) -> Dict[str, Any]:
        try:
            response = self._send(method, endpoint, body=body, params=params)
        except requests.RequestException as e:
            raise ProviderCallError(f"{endpoint} request failed: {e}")
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            raise ProviderCallError(
                payload.get("message") or f"{endpoint} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not payload.get("success") or payload.get("data") is None:
            raise ProviderCallError(payload.get("message") or f"{endpoint} returned no data")
        return payload["data"]

    def initiate_transfer(self, instruction: TransferInstruction) -> TransferResult:
        if self.mock_mode:
            return self._mock_transfer(instruction)

        body = {
            "AccountNo": instruction.account_number,
            "AmountR": float(instruction.amount),
            "APIRequestID": api_request_id(),
            "BankID": instruction.bank_id,
            "BeneMobile": instruction.beneficiary_mobile,
            "BeneName": instruction.account_holder_name.strip(),
            "bankName": instruction.bank_name.strip(),
            "IFSC": instruction.ifsc_code,
            "SenderEmail": (instruction.sender_email or "noreply@example.com").strip(),
            "SenderMobile": instruction.sender_mobile,
            "SenderName": instruction.sender_name.strip(),
            "paymentType": instruction.transfer_mode,
            "WebHook": "",
            "extraParam1": "NA",
            "extraParam2": "NA",
            "extraField1": instruction.client_ref_id,
            "sub_service_name": "ExpressPay",
            "remark": (instruction.remarks or f"Payout transfer to {instruction.account_holder_name}").strip(),
        }
        logger.info(
            f"Initiating {instruction.transfer_mode} transfer of {instruction.amount} "
            f"to {mask_account(instruction.account_number)}",
            extra={"client_ref_id": instruction.client_ref_id, "api_request_id": body["APIRequestID"]},
        )

        try:
            response = self._send("POST", "/expressPay2", body=body)
        except requests.exceptions.ConnectTimeout as e:
            return TransferRejected(reason=f"Could not reach payout provider: {e}", sent=False)
        except requests.exceptions.ReadTimeout as e:
            return TransferTimedOut(reason=f"Provider did not answer in time: {e}")
        except requests.exceptions.ConnectionError as e:
            return TransferTimedOut(reason=f"Connection to provider lost: {e}")
        except requests.RequestException as e:
            return TransferTimedOut(reason=f"Provider call failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code in AMBIGUOUS_HTTP_STATUSES:
            return TransferTimedOut(reason=f"Provider gateway returned HTTP {response.status_code}")
        if not response.ok:
            return TransferRejected(
                reason=payload.get("message") or payload.get("error") or f"HTTP {response.status_code}",
                http_status=response.status_code,
            )
        if not payload.get("success"):
            return TransferRejected(reason=payload.get("message") or "Transfer initiation failed")

        data = payload.get("data") or {}
        provider_txn_id = data.get("transaction_id")
        status = normalize_transfer_status(data.get("status"))
        message = data.get("remark") or payload.get("message") or ""
        if status == "failed":
            return TransferRejected(reason=message or "Transfer failed at provider", provider_txn_id=provider_txn_id)
        if not provider_txn_id:
            return TransferTimedOut(reason="Provider accepted the transfer without a transaction id")
        return TransferAccepted(provider_txn_id=str(provider_txn_id), status=status, message=message)

    def get_status(self, provider_txn_id: str) -> StatusReport:
        if self.mock_mode:
            return self._mock_status(provider_txn_id)
        data = self._query("POST", "/statusCheck", params={"transaction_id": provider_txn_id})
        try:
            status = STATUS_CODES.get(int(data.get("status", 1)), "pending")
        except (TypeError, ValueError):
            status = normalize_transfer_status(data.get("status"))
        return StatusReport(
            provider_txn_id=provider_txn_id,
            status=status,
            message=data.get("msg"),
            rrn=data.get("opid") or None,
            error_code=data.get("errorcode"),
        )

    def get_balance(self) -> FloatBalance:
        if self.mock_mode:
            return FloatBalance(balance=Decimal("10000"))
        data = self._query("GET", "/getBalance")
        return FloatBalance(
            balance=Decimal(str(data.get("balance") or 0)),
            lien=Decimal(str(data.get("lien") or 0)),
        )

    def list_banks(self) -> List[Bank]:
        if self.mock_mode:
            return list(MOCK_BANKS)
        data = self._query("POST", "/bankList")
        return [
            Bank(
                bank_id=int(item.get("id")),
                bank_name=item.get("bankName", ""),
                code=item.get("code"),
                ifsc=item.get("ifsc"),
                imps_enabled=_flag(item.get("isIMPS", True)),
                neft_enabled=_flag(item.get("isNEFT", True)),
                popular=_flag(item.get("isPopular", False)),
            )
            for item in data
        ]

    def verify_account(self, account_number: str, ifsc_code: str, bank_name: str = None) -> AccountVerification:
        """Look up the beneficiary behind an account; expects already-normalised input.

        A provider answer of success=false is a verdict on the account, not a failed call.
        """
        if self.mock_mode:
            return self._mock_verification(account_number, ifsc_code, bank_name)

        logger.info(f"Verifying account {mask_account(account_number)} at {ifsc_code}")
        try:
            response = self._send("POST", "/accountVerify", body={
                "accountNumber": account_number,
                "ifsc": ifsc_code,
                "bankName": bank_name or "",
            })
        except requests.RequestException as e:
            raise ProviderCallError(f"/accountVerify request failed: {e}")
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.ok:
            raise ProviderCallError(
                payload.get("message") or f"/accountVerify returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        data = payload.get("data") or {}
        if not payload.get("success") or data.get("isValid") is False:
            return AccountVerification(
                account_number=account_number,
                ifsc_code=ifsc_code,
                is_valid=False,
                message=payload.get("message") or payload.get("error") or "Account verification failed",
            )
        if not data:
            raise ProviderCallError("/accountVerify returned no data")
        return AccountVerification(
            account_number=account_number,
            ifsc_code=ifsc_code,
            is_valid=True,
            account_holder_name=data.get("accountHolderName"),
            bank_name=data.get("bankName") or bank_name,
            branch_name=data.get("branchName"),
            provider_ref=data.get("transactionId"),
            message=payload.get("message"),
        )

    # Mock provider

    def _mock_verification(self, account_number: str, ifsc_code: str, bank_name: str = None) -> AccountVerification:
        if account_number.startswith("000"):
            return AccountVerification(account_number, ifsc_code, is_valid=False, message="Account does not exist")
        return AccountVerification(
            account_number=account_number,
            ifsc_code=ifsc_code,
            is_valid=True,
            account_holder_name="TEST ACCOUNT HOLDER",
            bank_name=bank_name or "Test Bank",
            branch_name="Test Branch",
            provider_ref=f"MOCK_VERIFY_{int(time.time() * 1000)}",
        )

    def _mock_transfer(self, instruction: TransferInstruction) -> TransferResult:
        logger.info(f"[mock] transfer {instruction.client_ref_id}")
        if instruction.account_number.startswith("999"):
            return TransferRejected(reason="Bank server temporarily unavailable")
        return TransferAccepted(
            provider_txn_id=f"UTR{int(time.time() * 1000)}",
            status="pending",
            message=f"Amount of {instruction.amount} is pending",
        )

    def _mock_status(self, provider_txn_id: str) -> StatusReport:
        if "FAIL" in provider_txn_id:
            return StatusReport(provider_txn_id, "failed", "FAILED")
        if "PEND" in provider_txn_id:
            return StatusReport(provider_txn_id, "pending", "PENDING")
        rrn = "".join(random.choices(string.digits, k=12))
        return StatusReport(provider_txn_id, "success", "SUCCESS", rrn=rrn)

class ResilientProvider:
    """Async facade over PayoutProviderClient used by the orchestrator and reconciler."""

    def __init__(
        self,
        client: PayoutProviderClient,
        breaker: CircuitBreaker = None,
        retry_config: RetryConfig = None,
        transfer_timeout: float = None,
        query_timeout: float = None,
        cache=None,
        settings: Settings = None,
    ):
        self.settings = settings or default_settings
        self.client = client
        self.breaker = breaker or provider_circuit_breaker
        self.retry_config = retry_config or PROVIDER_QUERY_RETRY_CONFIG
        self.transfer_timeout = transfer_timeout or self.settings.payout_transfer_timeout_seconds
        self.query_timeout = query_timeout or self.settings.payout_api_timeout_seconds
        self.cache = cache

    async def initiate_transfer(self, instruction: TransferInstruction) -> TransferResult:
        try:
            return await self.breaker.call(
                self.client.initiate_transfer, instruction, timeout=self.transfer_timeout
            )
        except CircuitBreakerException:
            logger.warning(f"Provider circuit open; transfer {instruction.client_ref_id} not sent")
            return TransferRejected(reason="Payout provider unavailable; transfer not sent", sent=False)
        except asyncio.TimeoutError:
            logger.warning(f"Transfer {instruction.client_ref_id} exceeded {self.transfer_timeout}s budget")
            return TransferTimedOut(reason=f"No provider response within {self.transfer_timeout}s")
        except Exception as e:
            # Unknown whether the request left the process
            logger.exception(f"Unexpected error initiating transfer {instruction.client_ref_id}")
            return TransferTimedOut(reason=f"Provider call failed: {e}")

    async def _query(self, func, *args):
        async def attempt():
            return await self.breaker.call(func, *args, timeout=self.query_timeout)
        attempt.__name__ = getattr(func, "__name__", "provider_query")

        try:
            return await retry_async(attempt, self.retry_config)
        except CircuitBreakerException as e:
            raise ProviderUnavailable("Payout provider temporarily unavailable", original_error=e)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout("Payout provider did not respond in time", original_error=e)
        except ProviderCallError as e:
            raise ProviderUnavailable(str(e), original_error=e)

    async def get_status(self, provider_txn_id: str) -> StatusReport:
        return await self._query(self.client.get_status, provider_txn_id)

    async def get_balance(self) -> FloatBalance:
        return await self._query(self.client.get_balance)

    async def verify_account(self, account_number: str, ifsc_code: str, bank_name: str = None) -> AccountVerification:
        return await self._query(self.client.verify_account, account_number, ifsc_code, bank_name)

    async def list_banks(self, refresh: bool = False) -> List[Bank]:
        if self.cache is not None and not refresh:
            cached = self.cache.get_cached_bank_list()
            if cached:
                return [Bank(**item) for item in cached]
        banks = await self._query(self.client.list_banks)
        if self.cache is not None and banks:
            self.cache.cache_bank_list([asdict(bank) for bank in banks], self.settings.bank_list_cache_ttl_seconds)
        return banks

def filter_banks(banks: List[Bank], imps_only: bool = False, neft_only: bool = False,
                 popular_only: bool = False, search: str = None) -> List[Bank]:
    if imps_only:
        banks = [b for b in banks if b.imps_enabled]
    if neft_only:
        banks = [b for b in banks if b.neft_enabled]
    if popular_only:
        banks = [b for b in banks if b.popular]
    if search:
        needle = search.strip().lower()
        banks = [b for b in banks if needle in b.bank_name.lower() or needle in (b.code or "").lower()]
    return banks
