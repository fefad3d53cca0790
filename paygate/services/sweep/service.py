"""Scheduled reconciliation sweeps.

The balance sweep is a coarse monthly safety net: active chain-funded
subscriptions whose escrow wallet is empty are deactivated without consulting
the ledger or the grace window. The confirmation sweep runs on new blocks and
only flips `confirmed` on ledger rows; a row without a receipt after
`max_checks` sweeps is no longer polled.
"""

from decimal import Decimal

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.metrics import sweep_runs_total


BALANCE_SWEEP_JOB = "balance_sweep"
REGISTRY_REFRESH_JOB = "wallet_registry_refresh"


def build_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
        timezone="UTC",
    )


class ReconciliationSweep:
    def __init__(self, subscriptions, ledger, chain, activation, registry=None, max_checks: int | None = None) -> None:
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.chain = chain
        self.activation = activation
        self.registry = registry
        self.max_checks = max_checks or settings.confirmation_max_checks
        self._confirming = False

    def arm(self, scheduler) -> None:
        """(Re)install the periodic jobs; safe to call after every reconnect."""

        scheduler.add_job(
            self.balance_sweep,
            trigger=CronTrigger.from_crontab(settings.balance_sweep_cron, timezone="UTC"),
            id=BALANCE_SWEEP_JOB,
            name="Zero-balance sweep",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if self.registry is not None:
            scheduler.add_job(
                self.registry.refresh,
                trigger=IntervalTrigger(seconds=settings.wallet_registry_refresh_seconds),
                id=REGISTRY_REFRESH_JOB,
                name="Wallet registry refresh",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        logger.info("sweep_jobs_armed cron=%s", settings.balance_sweep_cron)

    async def balance_sweep(self) -> int:
        """Deactivate active chain-funded subscriptions with an empty wallet; returns count."""

        sweep_runs_total.labels(service=settings.service_name, sweep="balance").inc()
        deactivated = 0
        for subscription in self.subscriptions.active_chain_funded():
            balance = await self.chain.get_token_balance(subscription.token, subscription.consumer_wallet_address)
            if balance is None:
                logger.warning("balance_sweep_skipped subscription_id=%s reason=balance_unavailable", subscription.id)
                continue
            if balance != Decimal(0):
                continue
            result = await self.activation.deactivate(subscription.id, reason="balance_sweep_zero")
            if result is not None and result.changed:
                deactivated += 1
        logger.info("balance_sweep_done deactivated=%s", deactivated)
        return deactivated

    async def confirmation_sweep(self) -> int:
        """Confirm mined chain deposits; overlapping runs are skipped."""

        if self._confirming:
            logger.info("confirmation_sweep_skipped reason=already_running")
            return 0
        self._confirming = True
        try:
            sweep_runs_total.labels(service=settings.service_name, sweep="confirmation").inc()
            confirmed = 0
            checked: dict[str, bool | None] = {}
            missed: list[str] = []
            for row in self.ledger.unconfirmed(max_checks=self.max_checks):
                if row.transaction_hash not in checked:
                    checked[row.transaction_hash] = await self.chain.verify_transaction(row.transaction_hash)
                verdict = checked[row.transaction_hash]
                if verdict:
                    _, newly = self.ledger.confirm(row.id)
                    confirmed += int(newly)
                elif verdict is False:
                    missed.append(row.id)
                    if row.receipt_checks + 1 >= self.max_checks:
                        logger.warning(
                            "confirmation_abandoned id=%s hash=%s checks=%s",
                            row.id,
                            row.transaction_hash,
                            self.max_checks,
                        )
            self.ledger.note_receipt_miss(missed)
            if confirmed:
                logger.info("confirmation_sweep_done confirmed=%s", confirmed)
            return confirmed
        finally:
            self._confirming = False
