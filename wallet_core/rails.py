"""
Payment Rail Clients Module

REST clients for the two external payment networks: the inter-bank switch
(outbound transfers, account validation) and the card/bank deposit processor
(payment links). Every call uses a bounded timeout and never touches local
balances; failures surface as ExternalRailError.
"""

import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .exceptions import ExternalRailError
from .logging_config import get_logger

logger = get_logger("banka.rails")


def compute_card_signature(secret: str, raw_body: bytes) -> str:
    """HMAC-SHA512 hex digest of the raw webhook body"""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode()
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return fallback


class InterBankClient:
    """REST client for the inter-bank transfer switch"""

    def __init__(
        self,
        base_url: str = "https://nibss-test.onrender.com",
        secret_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": self.secret_key,
        }

    def _post(self, path: str, payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        start = time.time()
        try:
            response = self._client.post(f"{self.base_url}{path}", json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.error(f"Inter-bank {action} timed out after {self.timeout}s: {e}")
            raise ExternalRailError(f"Inter-bank {action} timed out", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error(f"Inter-bank {action} connection failed: {e}")
            raise ExternalRailError(f"Inter-bank {action} failed: {e}", retryable=True) from e

        latency_ms = (time.time() - start) * 1000
        if response.status_code >= 400:
            message = _error_message(response, f"Inter-bank {action} failed")
            logger.warning(f"Inter-bank {action} returned {response.status_code}: {message}")
            raise ExternalRailError(
                message,
                status_code=response.status_code,
                retryable=response.status_code >= 500
            )

        logger.debug(f"Inter-bank {action} completed in {latency_ms:.1f}ms")
        try:
            return response.json()
        except ValueError:
            return {}

    def submit_transfer(
        self,
        bank_code: str,
        bank_name: str,
        account_number: str,
        account_name: str,
        amount: Decimal,
        metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Submit an outbound transfer; settlement arrives later by webhook"""
        payload = {
            "bankCode": bank_code,
            "bankName": bank_name,
            "accountNo": account_number,
            "accountName": account_name,
            "amount": float(amount),
            "metadata": metadata,
        }
        return self._post("/banks/transfer", payload, "transfer")

    def validate_account(self, account_number: str, bank_code: str, bank_name: str) -> Dict[str, Any]:
        """Resolve the holder name of an account at another bank"""
        payload = {"bankCode": bank_code, "bankName": bank_name}
        return self._post(f"/banks/validate/{account_number}", payload, "validation")

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class CardDepositClient:
    """REST client for the card/bank deposit processor"""

    def __init__(
        self,
        base_url: str = "https://api.paystack.co",
        secret_key: str = "",
        callback_url: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def initialize_deposit(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Create a hosted payment link

        Returns:
            dict with authorization_url, access_code and reference
        """
        payload = {
            "email": email,
            "amount": amount_minor,
            "currency": "NGN",
            "reference": reference,
            "metadata": metadata,
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self._client.post(f"{self.base_url}/transaction/initialize", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Deposit initialization timed out: {e}")
            raise ExternalRailError("Deposit initialization timed out", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error(f"Deposit initialization connection failed: {e}")
            raise ExternalRailError(f"Deposit initialization failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            message = _error_message(response, "Deposit processor error")
            logger.warning(f"Deposit processor returned {response.status_code}: {message}")
            raise ExternalRailError(message, status_code=response.status_code,
                                    retryable=response.status_code >= 500)

        data = response.json().get("data") or {}
        if not data.get("authorization_url"):
            raise ExternalRailError("Deposit processor returned no payment link", retryable=True)
        return {
            "authorization_url": data["authorization_url"],
            "access_code": data.get("access_code"),
            "reference": data.get("reference", reference),
        }

    def verify_deposit(self, reference: str) -> Dict[str, Any]:
        """
        Look up a deposit's status at the processor

        Returns:
            The processor's transaction record (status, amount in minor units, paid_at, ...)
        """
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        url = f"{self.base_url}/transaction/verify/{quote(reference, safe='')}"
        try:
            response = self._client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Deposit verification timed out: {e}")
            raise ExternalRailError("Deposit verification timed out", retryable=True) from e
        except httpx.HTTPError as e:
            logger.error(f"Deposit verification connection failed: {e}")
            raise ExternalRailError(f"Deposit verification failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            message = _error_message(response, "Deposit processor error")
            logger.warning(f"Deposit processor returned {response.status_code}: {message}")
            raise ExternalRailError(message, status_code=response.status_code,
                                    retryable=response.status_code >= 500)

        return response.json().get("data") or {}

    def signature_for(self, raw_body: bytes) -> str:
        return compute_card_signature(self.secret_key, raw_body)

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class MockInterBankClient(InterBankClient):
    """Mock client for testing: accepts every transfer and records it"""

    def __init__(self, fail_with: Optional[ExternalRailError] = None, **kwargs):
        super().__init__(**kwargs)
        self.fail_with = fail_with
        self.submitted: List[Dict[str, Any]] = []

    def submit_transfer(self, bank_code, bank_name, account_number, account_name, amount, metadata):
        if self.fail_with:
            raise self.fail_with
        request = {
            "bankCode": bank_code,
            "bankName": bank_name,
            "accountNo": account_number,
            "accountName": account_name,
            "amount": amount,
            "metadata": metadata,
        }
        self.submitted.append(request)
        return {"status": "queued", "reference": metadata.get("reference")}

    def validate_account(self, account_number, bank_code, bank_name):
        return {"accountNumber": account_number, "accountName": "Mock Account Holder", "bankName": bank_name}


class MockCardDepositClient(CardDepositClient):
    """Mock client for testing: returns a fake payment link"""

    def __init__(self, fail_with: Optional[ExternalRailError] = None, **kwargs):
        kwargs.setdefault("secret_key", "sk_test_mock")
        super().__init__(**kwargs)
        self.fail_with = fail_with
        self.initialized: List[Dict[str, Any]] = []

    def initialize_deposit(self, email, amount_minor, reference, metadata):
        if self.fail_with:
            raise self.fail_with
        self.initialized.append({"email": email, "amount": amount_minor, "reference": reference,
                                 "metadata": metadata})
        return {
            "authorization_url": f"https://checkout.example.test/{reference}",
            "access_code": f"access_{reference}",
            "reference": reference,
        }

    def verify_deposit(self, reference):
        if self.fail_with:
            raise self.fail_with
        for deposit in self.initialized:
            if deposit["reference"] == reference:
                return {"reference": reference, "status": "success", "amount": deposit["amount"],
                        "currency": "NGN", "metadata": deposit["metadata"]}
        raise ExternalRailError("Transaction reference not found", status_code=400, retryable=False)
