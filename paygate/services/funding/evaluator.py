"""Funding Evaluator.

Decides whether a subscription's escrow wallet covers everything billed so far
and, when it does not, whether the subscription is still inside its grace
window. The evaluator never mutates subscription state; the activation service
acts on its verdicts.
"""

import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.metrics import funding_evaluation_seconds


@dataclass(frozen=True)
class FundingVerdict:
    sufficient: bool
    balance: Decimal
    grace_period: bool
    months_elapsed: int
    total_due: Decimal
    total_deposits: Decimal
    outstanding: Decimal
    message: str | None = None

    def as_dict(self) -> dict:
        data = asdict(self)
        for key in ("balance", "total_due", "total_deposits", "outstanding"):
            data[key] = str(data[key])
        return data


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (sqlite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calendar_months_between(later: datetime, earlier: datetime) -> int:
    """Whole calendar-month difference, ignoring the day of month.

    2024-01-15 -> 2024-03-01 is 2.
    """

    later = as_utc(later)
    earlier = as_utc(earlier)
    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def months_elapsed(now: datetime, created_at: datetime) -> int:
    """Billing periods started so far, counting the current one."""

    return max(calendar_months_between(now, created_at), 0) + 1


class FundingEvaluator:
    """Combine ledger deposits and the live wallet balance into a verdict."""

    def __init__(
        self,
        ledger,
        chain,
        *,
        grace_period_days: int | None = None,
        count_unconfirmed: bool | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ledger = ledger
        self.chain = chain
        self.grace_period_days = settings.grace_period_days if grace_period_days is None else grace_period_days
        self.count_unconfirmed = (
            settings.count_unconfirmed_deposits if count_unconfirmed is None else count_unconfirmed
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(self, subscription) -> FundingVerdict | None:
        """Return a verdict, or `None` when the subscription cannot be evaluated.

        `None` covers missing price, start date or wallet, and an on-chain
        balance that could not be fetched. Callers treat it as "no decision".
        """

        if subscription.price is None or subscription.created_at is None or not subscription.consumer_wallet_address:
            logger.info("funding_not_evaluable subscription_id=%s", subscription.id)
            return None

        started = time.perf_counter()
        now = as_utc(self.clock())
        created_at = as_utc(subscription.created_at)
        price = Decimal(str(subscription.price))

        elapsed = months_elapsed(now, created_at)
        total_due = price * elapsed
        total_deposits = self.ledger.total_deposits(subscription.id, include_unconfirmed=self.count_unconfirmed)
        outstanding = total_due - total_deposits

        balance = await self.chain.get_token_balance(subscription.token, subscription.consumer_wallet_address)
        funding_evaluation_seconds.labels(service=settings.service_name).observe(time.perf_counter() - started)
        if balance is None:
            logger.warning(
                "funding_balance_unavailable subscription_id=%s wallet=%s",
                subscription.id,
                subscription.consumer_wallet_address,
            )
            return None

        sufficient = balance >= outstanding
        grace_period = False
        message = None
        if not sufficient:
            grace_period = now <= created_at + timedelta(days=self.grace_period_days)
            message = "within grace period" if grace_period else "insufficient funds"

        verdict = FundingVerdict(
            sufficient=sufficient,
            balance=balance,
            grace_period=grace_period,
            months_elapsed=elapsed,
            total_due=total_due,
            total_deposits=total_deposits,
            outstanding=outstanding,
            message=message,
        )
        logger.info(
            "funding_evaluated subscription_id=%s sufficient=%s grace=%s balance=%s outstanding=%s months=%s",
            subscription.id,
            sufficient,
            grace_period,
            balance,
            outstanding,
            elapsed,
        )
        return verdict
