"""Escrow wallets for chain-funded subscriptions.

Each registered subscription without a caller-supplied wallet gets a fresh
gateway-held address. Its private key is stored Fernet-encrypted under
`ESCROW_ENCRYPTION_KEY` and only decrypted to sign an outbound token transfer.
"""

from decimal import Decimal

from cryptography.fernet import Fernet, InvalidToken
from eth_account import Account
from eth_account.signers.local import LocalAccount
from sqlalchemy import select
from web3 import Web3

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.rails import RailError, RailNotConfigured
from paygate.common.tracing import tracer
from paygate.services.escrow.models import EscrowWallet
from paygate.services.ledger.models import WITHDRAWAL, Transaction
from paygate.services.ledger.service import TransactionCreate


class EscrowKeyring:
    """Encrypts escrow private keys at rest."""

    def __init__(self, key: str | None = None) -> None:
        key = settings.escrow_encryption_key if key is None else key
        self._fernet = Fernet(key.encode()) if key else None

    @property
    def configured(self) -> bool:
        return self._fernet is not None

    def require(self) -> Fernet:
        if self._fernet is None:
            raise RailNotConfigured("ESCROW_ENCRYPTION_KEY is not set")
        return self._fernet

    def encrypt(self, private_key: str) -> str:
        return self.require().encrypt(private_key.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self.require().decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RailNotConfigured("escrow key cannot decrypt the stored wallet") from exc


class EscrowService:
    def __init__(self, session_factory, keyring: EscrowKeyring, chain, subscriptions, ledger) -> None:
        self.session_factory = session_factory
        self.keyring = keyring
        self.chain = chain
        self.subscriptions = subscriptions
        self.ledger = ledger

    def new_account(self) -> LocalAccount:
        """Generate a deposit address; fails before any key exists if encryption is off."""

        self.keyring.require()
        return Account.create()

    def store(self, subscription_id: str, account: LocalAccount) -> EscrowWallet:
        wallet = EscrowWallet(
            service_id=subscription_id,
            address=account.address,
            encrypted_private_key=self.keyring.encrypt(Web3.to_hex(account.key)),
            active=True,
        )
        with self.session_factory() as db:
            db.add(wallet)
            db.commit()
            db.refresh(wallet)
        logger.info("escrow_wallet_created subscription_id=%s address=%s", subscription_id, wallet.address)
        return wallet

    def wallet_for(self, subscription_id: str) -> EscrowWallet | None:
        with self.session_factory() as db:
            return db.execute(
                select(EscrowWallet).where(EscrowWallet.service_id == subscription_id)
            ).scalar_one_or_none()

    async def withdraw(
        self,
        subscription_id: str,
        to_address: str,
        amount: Decimal | str,
        token: str | None = None,
    ) -> Transaction:
        """Send tokens out of a subscription's escrow wallet and record the withdrawal."""

        wallet = self.wallet_for(subscription_id)
        if wallet is None or not wallet.active:
            raise LookupError("Escrow wallet not found.")
        subscription = self.subscriptions.get(subscription_id)
        token = token or (subscription.token if subscription is not None else "USDC")
        amount = Decimal(str(amount))
        if token not in self.chain.tokens:
            raise RailError(f"Unsupported token: {token}")
        if amount <= 0:
            raise RailError("Withdrawal amount must be positive.")
        if not Web3.is_address(to_address):
            raise RailError("Invalid destination address.")

        private_key = self.keyring.decrypt(wallet.encrypted_private_key)
        with tracer.start_as_current_span("escrow.withdraw") as span:
            span.set_attribute("subscription.id", subscription_id)
            transaction_hash = await self.chain.send_tokens(private_key, token, to_address, amount)
            span.set_attribute("chain.tx_hash", transaction_hash)
        row, _ = self.ledger.record(
            TransactionCreate(
                service_id=subscription_id,
                transaction_hash=transaction_hash,
                amount=amount,
                transaction_type=WITHDRAWAL,
                from_address=wallet.address,
                to_address=Web3.to_checksum_address(to_address),
                token_address=self.chain.tokens[token].address,
                confirmed=False,
                meta={"token": token},
            )
        )
        logger.info(
            "escrow_withdrawal_sent subscription_id=%s token=%s amount=%s to=%s hash=%s",
            subscription_id,
            token,
            amount,
            to_address,
            transaction_hash,
        )
        return row
