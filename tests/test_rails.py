"""
Tests for payment rail clients
"""

import json
import pytest
import httpx
from decimal import Decimal

from wallet_core.rails import (
    InterBankClient, CardDepositClient, MockInterBankClient, MockCardDepositClient, compute_card_signature
)
from wallet_core.exceptions import ExternalRailError


def recording_transport(status_code=200, body=None, raise_exc=None):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if raise_exc:
            raise raise_exc
        return httpx.Response(status_code, json=body if body is not None else {})

    return httpx.MockTransport(handler), requests


class TestInterBankClient:
    """Test InterBankClient against a mock transport"""

    def test_submit_transfer(self):
        transport, requests = recording_transport(body={"status": "queued"})
        client = InterBankClient(base_url="https://switch.test/", secret_key="secret", transport=transport)

        response = client.submit_transfer("058", "Other Bank", "0123456789", "Dayo D", Decimal("1500.50"),
                                          {"reference": "EXT_1"})

        assert response == {"status": "queued"}
        request = requests[0]
        assert str(request.url) == "https://switch.test/banks/transfer"
        assert request.headers["Authorization"] == "secret"
        payload = json.loads(request.content)
        assert payload["accountNo"] == "0123456789"
        assert payload["amount"] == 1500.5
        assert payload["metadata"] == {"reference": "EXT_1"}
        client.close()

    def test_validate_account(self):
        transport, requests = recording_transport(body={"accountName": "Dayo D"})
        client = InterBankClient(base_url="https://switch.test", transport=transport)

        assert client.validate_account("0123456789", "058", "Other Bank") == {"accountName": "Dayo D"}
        assert requests[0].url.path == "/banks/validate/0123456789"
        assert json.loads(requests[0].content) == {"bankCode": "058", "bankName": "Other Bank"}

    def test_client_error_not_retryable(self):
        transport, _ = recording_transport(status_code=400, body={"message": "Invalid account"})
        client = InterBankClient(base_url="https://switch.test", transport=transport)

        with pytest.raises(ExternalRailError, match="Invalid account") as exc_info:
            client.validate_account("0123456789", "058", "Other Bank")
        assert exc_info.value.status_code == 400
        assert not exc_info.value.retryable

    def test_server_error_retryable(self):
        transport, _ = recording_transport(status_code=503)
        client = InterBankClient(base_url="https://switch.test", transport=transport)

        with pytest.raises(ExternalRailError) as exc_info:
            client.submit_transfer("058", "Other Bank", "0123456789", "Dayo D", Decimal("100"), {})
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable

    def test_timeout(self):
        transport, _ = recording_transport(raise_exc=httpx.ReadTimeout("too slow"))
        client = InterBankClient(base_url="https://switch.test", transport=transport)

        with pytest.raises(ExternalRailError, match="timed out") as exc_info:
            client.submit_transfer("058", "Other Bank", "0123456789", "Dayo D", Decimal("100"), {})
        assert exc_info.value.retryable


class TestCardDepositClient:
    """Test CardDepositClient against a mock transport"""

    def test_initialize_deposit(self):
        transport, requests = recording_transport(body={
            "status": True,
            "data": {"authorization_url": "https://pay.test/abc", "access_code": "abc", "reference": "DEP_1"},
        })
        client = CardDepositClient(base_url="https://card.test", secret_key="sk_test",
                                   callback_url="https://wallet.test/done", transport=transport)

        link = client.initialize_deposit("alice@example.com", 500000, "DEP_1", {"type": "deposit"})

        assert link == {"authorization_url": "https://pay.test/abc", "access_code": "abc", "reference": "DEP_1"}
        request = requests[0]
        assert request.url.path == "/transaction/initialize"
        assert request.headers["Authorization"] == "Bearer sk_test"
        payload = json.loads(request.content)
        assert payload["amount"] == 500000
        assert payload["callback_url"] == "https://wallet.test/done"

    def test_missing_link(self):
        transport, _ = recording_transport(body={"status": True, "data": {}})
        client = CardDepositClient(base_url="https://card.test", transport=transport)
        with pytest.raises(ExternalRailError, match="no payment link"):
            client.initialize_deposit("alice@example.com", 10000, "DEP_1", {})

    def test_processor_error(self):
        transport, _ = recording_transport(status_code=401, body={"message": "Invalid key"})
        client = CardDepositClient(base_url="https://card.test", transport=transport)
        with pytest.raises(ExternalRailError, match="Invalid key"):
            client.initialize_deposit("alice@example.com", 10000, "DEP_1", {})

    def test_verify_deposit(self):
        transport, requests = recording_transport(body={
            "status": True,
            "data": {"reference": "DEP_1", "status": "success", "amount": 500000},
        })
        client = CardDepositClient(base_url="https://card.test", secret_key="sk_test", transport=transport)

        assert client.verify_deposit("DEP_1")["status"] == "success"
        request = requests[0]
        assert request.method == "GET"
        assert request.url.path == "/transaction/verify/DEP_1"
        assert request.headers["Authorization"] == "Bearer sk_test"

    def test_verify_deposit_reference_is_escaped(self):
        transport, requests = recording_transport(body={"data": {}})
        client = CardDepositClient(base_url="https://card.test", transport=transport)
        client.verify_deposit("DEP/../1")
        assert str(requests[0].url).endswith("/transaction/verify/DEP%2F..%2F1")

    def test_verify_deposit_not_found(self):
        transport, _ = recording_transport(status_code=400, body={"message": "Transaction reference not found"})
        client = CardDepositClient(base_url="https://card.test", transport=transport)
        with pytest.raises(ExternalRailError, match="not found") as exc_info:
            client.verify_deposit("DEP_X")
        assert not exc_info.value.retryable

    def test_signature(self):
        client = CardDepositClient(secret_key="sk_test")
        body = b'{"event":"charge.success"}'
        assert client.signature_for(body) == compute_card_signature("sk_test", body)
        assert len(client.signature_for(body)) == 128


class TestMockClients:
    """Test mock rail clients"""

    def test_mock_interbank_records_submissions(self):
        client = MockInterBankClient()
        response = client.submit_transfer("058", "Other Bank", "0123456789", "Dayo D", Decimal("100"),
                                          {"reference": "EXT_1"})
        assert response["reference"] == "EXT_1"
        assert len(client.submitted) == 1

    def test_mock_failure(self):
        client = MockCardDepositClient(fail_with=ExternalRailError("down"))
        with pytest.raises(ExternalRailError):
            client.initialize_deposit("alice@example.com", 100, "DEP_1", {})
