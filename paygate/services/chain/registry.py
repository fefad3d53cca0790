"""Explicitly owned cache of the wallets the chain ingestor watches."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from paygate.common.logging import logger


@dataclass(frozen=True)
class WalletSnapshot:
    # lower-cased consumer (escrow) wallet -> subscription id
    consumer_wallets: dict[str, str] = field(default_factory=dict)
    validator_wallets: frozenset[str] = frozenset()
    refreshed_at: datetime | None = None

    def subscription_for(self, address: str) -> str | None:
        return self.consumer_wallets.get(address.lower())

    def is_validator_wallet(self, address: str) -> bool:
        return address.lower() in self.validator_wallets


class WalletRegistry:
    """Built once at startup; `refresh()` swaps in a new immutable snapshot."""

    def __init__(self, subscriptions) -> None:
        self.subscriptions = subscriptions
        self._snapshot = WalletSnapshot()

    def read(self) -> WalletSnapshot:
        return self._snapshot

    def refresh(self) -> WalletSnapshot:
        consumer_wallets: dict[str, str] = {}
        validator_wallets: set[str] = set()
        for subscription in self.subscriptions.chain_funded():
            consumer_wallets[subscription.consumer_wallet_address.lower()] = subscription.id
            if subscription.validator_wallet_address:
                validator_wallets.add(subscription.validator_wallet_address.lower())
        self._snapshot = WalletSnapshot(
            consumer_wallets=consumer_wallets,
            validator_wallets=frozenset(validator_wallets),
            refreshed_at=datetime.now(timezone.utc),
        )
        logger.info(
            "wallet_registry_refreshed consumer_wallets=%s validator_wallets=%s",
            len(consumer_wallets),
            len(validator_wallets),
        )
        return self._snapshot
