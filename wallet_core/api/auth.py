"""
Authentication dependencies and the wallet system container
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import WalletConfig, get_config
from ..storage import StorageInterface, create_storage
from ..locks import KeyedLockRegistry
from ..accounts import AccountManager
from ..ledger import Ledger
from ..tax import DailyCounterCache, TaxEngine
from ..rails import InterBankClient, CardDepositClient
from ..transfers import TransferCoordinator
from ..webhooks import SettlementWebhookProcessor
from ..savings import SavingsManager
from ..scheduler import AutoChargeScheduler
from ..exceptions import AuthError


@dataclass
class Identity:
    """Authenticated caller"""
    user_id: str
    email: Optional[str] = None


class JWTIdentityVerifier:
    """Verifies bearer tokens issued by the identity provider"""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, token: Optional[str]) -> Identity:
        """
        Decode a bearer token into an Identity

        Raises:
            AuthError: Token missing, expired, invalid or without a subject
        """
        if not token:
            raise AuthError("Authorization token is required")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthError("Invalid or expired token")

        user_id = payload.get("sub") or payload.get("uid")
        if not user_id:
            raise AuthError("Invalid token")
        return Identity(user_id=str(user_id), email=payload.get("email"))


class WalletSystem:
    """Wallet core with all components initialized"""

    def __init__(
        self,
        config: Optional[WalletConfig] = None,
        storage: Optional[StorageInterface] = None,
        interbank_client: Optional[InterBankClient] = None,
        card_client: Optional[CardDepositClient] = None
    ):
        self.config = config or get_config()
        cfg = self.config

        # Initialize storage
        self.storage = storage or create_storage(cfg.use_sqlite, cfg.database_path)
        self.locks = KeyedLockRegistry()

        # Initialize core components
        self.account_manager = AccountManager(
            self.storage, self.locks,
            default_bank_name=cfg.bank_name,
            pin_hash_n=cfg.pin_hash_n
        )
        self.ledger = Ledger(self.storage, self.locks)
        self.tax_engine = TaxEngine(
            self.ledger,
            DailyCounterCache(ttl_seconds=cfg.tax_cache_ttl_seconds, tz=cfg.local_timezone),
            vat_rate=Decimal(cfg.vat_rate),
            free_transactions_per_day=cfg.free_transactions_per_day,
            nibss_fee_amount=Decimal(cfg.nibss_fee_amount),
            nibss_fee_threshold=Decimal(cfg.nibss_fee_threshold)
        )

        # Payment rails
        self.interbank_client = interbank_client or InterBankClient(
            base_url=cfg.interbank_base_url,
            secret_key=cfg.interbank_secret_key,
            timeout=cfg.rail_timeout_seconds
        )
        self.card_client = card_client or CardDepositClient(
            base_url=cfg.card_base_url,
            secret_key=cfg.card_secret_key,
            callback_url=cfg.deposit_callback_url,
            timeout=cfg.rail_timeout_seconds
        )

        self.transfer_coordinator = TransferCoordinator(
            self.account_manager, self.ledger, self.tax_engine,
            self.interbank_client, self.card_client,
            bank_name=cfg.bank_name,
            min_transfer_amount=Decimal(cfg.min_transfer_amount),
            min_deposit_amount=Decimal(cfg.min_deposit_amount),
            exempt_internal_transfers=cfg.exempt_internal_transfers
        )
        self.webhook_processor = SettlementWebhookProcessor(
            self.account_manager, self.ledger, self.tax_engine,
            interbank_secret=cfg.interbank_webhook_secret,
            card_secret=cfg.card_secret_key,
            credit_surcharge_threshold=Decimal(cfg.credit_surcharge_threshold),
            credit_surcharge_amount=Decimal(cfg.credit_surcharge_amount),
            duplicate_window_seconds=cfg.duplicate_debit_window_seconds
        )
        self.savings_manager = SavingsManager(self.storage, self.locks, self.account_manager, self.ledger)
        self.scheduler = AutoChargeScheduler(self.savings_manager, tick_seconds=cfg.auto_charge_tick_seconds)

        self.identity_verifier = JWTIdentityVerifier(cfg.jwt_secret, cfg.jwt_algorithm)

    def close(self) -> None:
        """Stop background work and release connections"""
        self.scheduler.stop(timeout=5.0)
        self.interbank_client.close()
        self.card_client.close()
        self.storage.close()


# JWT Security
security = HTTPBearer(auto_error=False)


# Dependency to get wallet system
def get_wallet_system(request: Request) -> WalletSystem:
    return request.app.state.wallet_system


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: WalletSystem = Depends(get_wallet_system)
) -> Identity:
    """Dependency that validates the bearer token and returns the caller"""
    if not system.config.auth_enabled:
        return Identity(user_id="test_user", email="test_user@example.com")  # For tests when auth is disabled

    token = credentials.credentials if credentials else None
    return system.identity_verifier.verify(token)
