"""Domain-specific exceptions"""

from typing import Optional


class WalletError(Exception):
    """Base exception for the wallet core"""

    pass


class ValidationError(WalletError):
    """Input is malformed or missing; the caller can fix it"""

    pass


class AuthError(WalletError):
    """Bearer credential is missing or invalid"""

    pass


class PermissionDenied(AuthError):
    """Authenticated caller does not own the resource"""

    pass


class NotFound(WalletError):
    """Unknown account, savings goal or transaction"""

    pass


class InsufficientFunds(WalletError):
    """A debit would drive a balance below zero"""

    pass


class InvalidPin(WalletError):
    """Transaction PIN does not match the stored hash"""

    pass


class DuplicateReference(WalletError):
    """A transaction with this reference already exists"""

    def __init__(self, reference: str):
        super().__init__(f"Transaction reference {reference} already recorded")
        self.reference = reference


class ExternalRailError(WalletError):
    """Payment network rejected the request or timed out"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class SignatureMismatch(WalletError):
    """Webhook payload failed authenticity verification"""

    pass


class LedgerIntegrityError(WalletError):
    """A unit of work failed to commit after balances were touched"""

    pass
