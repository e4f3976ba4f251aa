"""
Provider wire mapping: request bodies, response parsing and transport failure classification.
"""
from decimal import Decimal

import pytest
import requests

from payout_service.provider_client import (
    MOCK_BANKS, AccountVerification, Bank, PayoutProviderClient, ProviderCallError, TransferAccepted,
    TransferInstruction, TransferRejected, TransferTimedOut, api_request_id, filter_banks,
)
from fakes import make_settings

class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

class FakeSession:
    """Stands in for requests.Session; returns a scripted response or raises."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error:
            raise self.error
        return self.response

def instruction(**overrides):
    values = dict(
        account_number="123456789012",
        ifsc_code="HDFC0001234",
        account_holder_name="Asha Rao",
        amount=Decimal("500.00"),
        transfer_mode="IMPS",
        bank_id=2,
        bank_name="HDFC Bank",
        beneficiary_mobile="9876543210",
        sender_name="Ravi Traders",
        sender_mobile="9123456789",
        client_ref_id="PAY-m1-1700000000000-ABC123",
    )
    values.update(overrides)
    return TransferInstruction(**values)

def client_with(response=None, error=None, **settings):
    session = FakeSession(response, error)
    settings.setdefault("payout_partner_id", "partner-1")
    settings.setdefault("payout_api_base_url", "https://provider.test/payout")
    return PayoutProviderClient(make_settings(**settings), session=session), session

def transfer_payload(status="SUCCESS", transaction_id="UTR9001"):
    return {
        "success": True,
        "message": "Transaction processed",
        "data": {
            "transaction_id": transaction_id,
            "clientReqId": 1700000000000123,
            "status": status,
            "transactionAmount": 500,
            "serviceCharge": 5,
            "totalAmount": 505,
            "remark": f"Amount of 500 is {status.lower()}",
        },
    }

def test_initiate_transfer_request_body():
    client, session = client_with(FakeResponse(200, transfer_payload()))

    client.initiate_transfer(instruction())

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://provider.test/payout/expressPay2"
    assert call["headers"]["partnerid"] == "partner-1"
    body = call["json"]
    assert body["AccountNo"] == "123456789012"
    assert body["AmountR"] == 500.0
    assert body["paymentType"] == "IMPS"
    assert body["extraField1"] == "PAY-m1-1700000000000-ABC123"
    assert body["SenderEmail"] == "noreply@example.com"
    assert body["sub_service_name"] == "ExpressPay"
    assert body["remark"] == "Payout transfer to Asha Rao"
    assert len(str(body["APIRequestID"])) == 16

def test_settled_transfer_is_accepted():
    client, _ = client_with(FakeResponse(200, transfer_payload("SUCCESS")))

    result = client.initiate_transfer(instruction())

    assert isinstance(result, TransferAccepted)
    assert result.settled
    assert result.provider_txn_id == "UTR9001"

def test_pending_transfer_is_accepted_unsettled():
    client, _ = client_with(FakeResponse(200, transfer_payload("PENDING")))

    result = client.initiate_transfer(instruction())

    assert isinstance(result, TransferAccepted)
    assert not result.settled

def test_failed_status_in_body_is_rejection():
    client, _ = client_with(FakeResponse(200, transfer_payload("FAILED")))

    result = client.initiate_transfer(instruction())

    assert isinstance(result, TransferRejected)
    assert result.provider_txn_id == "UTR9001"

def test_unsuccessful_body_is_rejection():
    client, _ = client_with(FakeResponse(200, {"success": False, "message": "Insufficient provider balance"}))

    result = client.initiate_transfer(instruction())

    assert result == TransferRejected(reason="Insufficient provider balance")

def test_accepted_without_transaction_id_is_ambiguous():
    client, _ = client_with(FakeResponse(200, transfer_payload("PENDING", transaction_id=None)))

    assert isinstance(client.initiate_transfer(instruction()), TransferTimedOut)

@pytest.mark.parametrize("status_code,expected", [
    (400, TransferRejected),
    (500, TransferRejected),
    (502, TransferTimedOut),
    (504, TransferTimedOut),
])
def test_http_status_classification(status_code, expected):
    client, _ = client_with(FakeResponse(status_code, {"message": "upstream"}))

    assert isinstance(client.initiate_transfer(instruction()), expected)

def test_connect_timeout_means_not_sent():
    client, _ = client_with(error=requests.exceptions.ConnectTimeout("connect timed out"))

    result = client.initiate_transfer(instruction())

    assert isinstance(result, TransferRejected)
    assert result.sent is False

@pytest.mark.parametrize("error", [
    requests.exceptions.ReadTimeout("read timed out"),
    requests.exceptions.ConnectionError("connection reset"),
])
def test_mid_flight_failures_are_ambiguous(error):
    client, _ = client_with(error=error)

    assert isinstance(client.initiate_transfer(instruction()), TransferTimedOut)

def test_status_check_mapping():
    payload = {"success": True, "data": {"status": 2, "msg": "SUCCESS", "opid": "412345678901", "errorcode": None}}
    client, session = client_with(FakeResponse(200, payload))

    report = client.get_status("UTR9001")

    assert session.calls[0]["url"].endswith("/statusCheck")
    assert session.calls[0]["params"] == {"transaction_id": "UTR9001"}
    assert report.status == "success"
    assert report.terminal
    assert report.rrn == "412345678901"

def test_status_check_failed_and_pending():
    client, _ = client_with(FakeResponse(200, {"success": True, "data": {"status": 0, "msg": "FAILED"}}))
    assert client.get_status("UTR1").status == "failed"

    client, _ = client_with(FakeResponse(200, {"success": True, "data": {"status": 1, "msg": "PENDING"}}))
    report = client.get_status("UTR1")
    assert report.status == "pending"
    assert not report.terminal

def test_status_check_errors_raise():
    client, _ = client_with(FakeResponse(200, {"success": False, "message": "not found"}))
    with pytest.raises(ProviderCallError):
        client.get_status("UTR1")

    client, _ = client_with(error=requests.exceptions.ReadTimeout("slow"))
    with pytest.raises(ProviderCallError):
        client.get_status("UTR1")

def test_balance_subtracts_lien():
    client, _ = client_with(FakeResponse(200, {"success": True, "data": {"balance": 25000.5, "lien": 500}}))

    balance = client.get_balance()

    assert balance.available == Decimal("24500.5")

def test_bank_list_parsing():
    payload = {"success": True, "data": [
        {"id": 7, "bankName": "Kotak Mahindra Bank", "code": "KKBK", "ifsc": "KKBK0000001",
         "isIMPS": 1, "isNEFT": 0, "isPopular": "true"},
    ]}
    client, _ = client_with(FakeResponse(200, payload))

    banks = client.list_banks()

    assert banks == [Bank(7, "Kotak Mahindra Bank", "KKBK", "KKBK0000001", True, False, True)]

def test_account_verification_request_and_mapping():
    payload = {"success": True, "message": "Account verified", "data": {
        "accountNumber": "123456789012", "ifsc": "HDFC0001234", "accountHolderName": "ASHA RAO",
        "bankName": "HDFC Bank", "branchName": "Koramangala", "isValid": True, "transactionId": "AV1001",
    }}
    client, session = client_with(FakeResponse(200, payload))

    result = client.verify_account("123456789012", "HDFC0001234", "HDFC Bank")

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://provider.test/payout/accountVerify"
    assert call["json"] == {"accountNumber": "123456789012", "ifsc": "HDFC0001234", "bankName": "HDFC Bank"}
    assert result == AccountVerification(
        "123456789012", "HDFC0001234", True, account_holder_name="ASHA RAO", bank_name="HDFC Bank",
        branch_name="Koramangala", provider_ref="AV1001", message="Account verified",
    )

@pytest.mark.parametrize("payload", [
    {"success": False, "message": "Invalid account number"},
    {"success": True, "data": {"isValid": False}},
])
def test_account_verification_negative_answer(payload):
    client, _ = client_with(FakeResponse(200, payload))

    result = client.verify_account("123456789012", "HDFC0001234")

    assert result.is_valid is False
    assert result.account_holder_name is None
    assert result.message

def test_account_verification_transport_errors_raise():
    client, _ = client_with(FakeResponse(502))
    with pytest.raises(ProviderCallError) as excinfo:
        client.verify_account("123456789012", "HDFC0001234")
    assert excinfo.value.status_code == 502

    client, _ = client_with(error=requests.exceptions.ConnectionError("reset"))
    with pytest.raises(ProviderCallError):
        client.verify_account("123456789012", "HDFC0001234")

def test_mock_mode():
    client, session = client_with(payout_mock_mode=True)

    assert isinstance(client.initiate_transfer(instruction(account_number="999123456789")), TransferRejected)
    accepted = client.initiate_transfer(instruction())
    assert isinstance(accepted, TransferAccepted)
    assert accepted.provider_txn_id.startswith("UTR")
    assert client.get_status("UTRFAIL1").status == "failed"
    assert client.get_status("UTRPEND1").status == "pending"
    assert client.get_status("UTR123").status == "success"
    assert client.get_balance().available == Decimal("10000")
    assert len(client.list_banks()) == 5
    assert client.verify_account("000123456789", "HDFC0001234").is_valid is False
    verified = client.verify_account("123456789012", "HDFC0001234")
    assert verified.is_valid
    assert verified.account_holder_name == "TEST ACCOUNT HOLDER"
    assert session.calls == []

def test_filter_banks():
    assert [b.code for b in filter_banks(MOCK_BANKS, popular_only=True)] == ["SBIN", "HDFC", "ICIC", "UTIB"]
    assert [b.bank_name for b in filter_banks(MOCK_BANKS, search="hdfc")] == ["HDFC Bank"]
    assert filter_banks(MOCK_BANKS, imps_only=True, neft_only=True) == MOCK_BANKS

def test_api_request_id_is_sixteen_digits():
    assert len(str(api_request_id())) == 16
