"""Chain Event Ingestor.

Routes stablecoin Transfer logs to subscriptions by wallet address, records
deposits in the ledger and drives funding reconciliation. The outer loop
survives transport failures by reconnecting after a fixed delay.
"""

import asyncio

from paygate.common.config import settings
from paygate.common.logging import bind, logger
from paygate.common.metrics import chain_transfers_total
from paygate.common.tracing import tracer
from paygate.services.chain.client import BLOCK, TRANSFER, TransferEvent
from paygate.services.ledger.models import DEPOSIT
from paygate.services.ledger.service import TransactionCreate


class ChainEventIngestor:
    def __init__(
        self,
        chain,
        registry,
        ledger,
        activation,
        *,
        sweep=None,
        scheduler=None,
        reconnect_delay_seconds: float | None = None,
    ) -> None:
        self.chain = chain
        self.registry = registry
        self.ledger = ledger
        self.activation = activation
        self.sweep = sweep
        self.scheduler = scheduler
        self.reconnect_delay_seconds = (
            settings.chain_reconnect_delay_seconds if reconnect_delay_seconds is None else reconnect_delay_seconds
        )
        self._background: set[asyncio.Task] = set()

    def monitor(self) -> None:
        """Install exactly one Transfer and one block listener."""

        self.chain.remove_all_listeners(TRANSFER)
        self.chain.remove_all_listeners(BLOCK)
        self.chain.on(TRANSFER, self.handle_transfer)
        self.chain.on(BLOCK, self.handle_block)
        self.chain.watch(self.watched_wallets)
        snapshot = self.registry.read()
        logger.info(
            "chain_monitoring tokens=%s consumer_wallets=%s",
            ",".join(sorted(self.chain.tokens)),
            len(snapshot.consumer_wallets),
        )

    def watched_wallets(self) -> tuple[list[str], list[str]]:
        snapshot = self.registry.read()
        return list(snapshot.consumer_wallets), sorted(snapshot.validator_wallets)

    async def handle_transfer(self, event: TransferEvent) -> None:
        snapshot = self.registry.read()
        unbind = bind(rail="chain", event_id=f"{event.transaction_hash}:{event.log_index}")
        try:
            if snapshot.is_validator_wallet(event.from_address):
                chain_transfers_total.labels(
                    service=settings.service_name, token=event.token, direction="outbound"
                ).inc()
                logger.info(
                    "chain_transfer_out token=%s from=%s to=%s amount=%s hash=%s",
                    event.token,
                    event.from_address,
                    event.to_address,
                    event.amount,
                    event.transaction_hash,
                )

            subscription_id = snapshot.subscription_for(event.to_address)
            if subscription_id is None:
                return

            chain_transfers_total.labels(service=settings.service_name, token=event.token, direction="inbound").inc()
            with tracer.start_as_current_span("chain.transfer") as span:
                span.set_attribute("subscription.id", subscription_id)
                span.set_attribute("chain.tx_hash", event.transaction_hash)
                logger.info(
                    "chain_transfer_in subscription_id=%s token=%s from=%s amount=%s hash=%s block=%s",
                    subscription_id,
                    event.token,
                    event.from_address,
                    event.amount,
                    event.transaction_hash,
                    event.block_number,
                )
                self.ledger.record(
                    TransactionCreate(
                        service_id=subscription_id,
                        transaction_hash=event.transaction_hash,
                        log_index=event.log_index,
                        amount=event.amount,
                        transaction_type=DEPOSIT,
                        from_address=event.from_address,
                        to_address=event.to_address,
                        token_address=event.token_address,
                        confirmed=False,
                        block_number=event.block_number,
                        meta={"token": event.token},
                    )
                )
                # Replays reconcile too; only the ledger insert is deduplicated.
                await self.activation.reconcile(
                    subscription_id, allow_deactivate=False, event_ref=event.transaction_hash
                )
        finally:
            unbind()

    async def handle_block(self, block_number: int) -> None:
        if self.sweep is None:
            return
        task = asyncio.create_task(self.sweep.confirmation_sweep())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def run_forever(self) -> None:
        """Connect, subscribe and poll; reconnect after a fixed delay on any failure."""

        while True:
            try:
                await self.chain.connect()
                self.registry.refresh()
                self.monitor()
                if self.sweep is not None and self.scheduler is not None:
                    self.sweep.arm(self.scheduler)
                await self.chain.poll_forever()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "chain_loop_error error=%s reconnect_in_s=%s",
                    exc,
                    self.reconnect_delay_seconds,
                )
                await asyncio.sleep(self.reconnect_delay_seconds)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
