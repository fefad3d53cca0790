"""Ledger Store: idempotent transaction recording and deposit aggregation."""

import secrets
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.metrics import duplicate_events_skipped_total
from paygate.services.ledger.models import DEPOSIT, WITHDRAWAL, Transaction


SYNTHETIC_PREFIX = "synthetic:"


def synthetic_hash() -> str:
    """Placeholder hash for rails that do not hand us an identifier up front."""

    return f"{SYNTHETIC_PREFIX}{secrets.token_hex(32)}"


@dataclass
class TransactionCreate:
    """Fields needed to append one ledger row."""

    service_id: str
    transaction_hash: str
    amount: Decimal
    transaction_type: str = DEPOSIT
    from_address: str | None = None
    to_address: str | None = None
    token_address: str | None = None
    confirmed: bool = False
    block_number: int = -1
    log_index: int = -1
    meta: dict | None = field(default=None)

    def __post_init__(self) -> None:
        if self.transaction_type not in (DEPOSIT, WITHDRAWAL):
            raise ValueError(f"invalid transaction_type: {self.transaction_type}")
        if not self.transaction_hash:
            raise ValueError("transaction_hash is required")
        self.amount = Decimal(str(self.amount))


class LedgerStore:
    """Owns `transactions` rows; every write is a single-row unit."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _existing(self, db, service_id: str, transaction_hash: str, log_index: int) -> Transaction | None:
        return db.execute(
            select(Transaction).where(
                Transaction.service_id == service_id,
                Transaction.transaction_hash == transaction_hash,
                Transaction.log_index == log_index,
            )
        ).scalar_one_or_none()

    def record(self, tx: TransactionCreate) -> tuple[Transaction, bool]:
        """Append a row once per real-world event.

        Returns `(row, created)`. Re-recording the same
        `(service_id, transaction_hash, log_index)` returns the stored row with
        `created=False`, including when a concurrent writer wins the insert race.
        """

        with self.session_factory() as db:
            existing = self._existing(db, tx.service_id, tx.transaction_hash, tx.log_index)
            if existing is not None:
                self._record_duplicate(tx)
                return existing, False
            row = Transaction(
                service_id=tx.service_id,
                transaction_hash=tx.transaction_hash,
                log_index=tx.log_index,
                synthetic=tx.transaction_hash.startswith(SYNTHETIC_PREFIX),
                from_address=tx.from_address,
                to_address=tx.to_address,
                amount=tx.amount,
                token_address=tx.token_address,
                transaction_type=tx.transaction_type,
                confirmed=tx.confirmed,
                block_number=tx.block_number,
                meta=tx.meta,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._existing(db, tx.service_id, tx.transaction_hash, tx.log_index)
                if existing is None:
                    raise
                self._record_duplicate(tx)
                return existing, False
            logger.info(
                "ledger_recorded service_id=%s hash=%s type=%s amount=%s confirmed=%s",
                tx.service_id,
                tx.transaction_hash,
                tx.transaction_type,
                tx.amount,
                tx.confirmed,
            )
            return row, True

    def _record_duplicate(self, tx: TransactionCreate) -> None:
        logger.info(
            "duplicate transaction skipped service_id=%s hash=%s log_index=%s",
            tx.service_id,
            tx.transaction_hash,
            tx.log_index,
        )
        duplicate_events_skipped_total.labels(service=settings.service_name, source="ledger").inc()

    def get(self, transaction_id: str) -> Transaction | None:
        with self.session_factory() as db:
            return db.get(Transaction, transaction_id)

    def find_by_hash(self, transaction_hash: str) -> list[Transaction]:
        with self.session_factory() as db:
            return list(
                db.execute(select(Transaction).where(Transaction.transaction_hash == transaction_hash))
                .scalars()
                .all()
            )

    def for_service(self, service_id: str) -> list[Transaction]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Transaction).where(Transaction.service_id == service_id).order_by(Transaction.created_at)
                )
                .scalars()
                .all()
            )

    def confirm(self, transaction_id: str, meta: dict | None = None) -> tuple[Transaction | None, bool]:
        """Flip `confirmed` on; returns `(row, newly_confirmed)`.

        `meta` is merged into the stored receipt data when given.
        """

        with self.session_factory() as db:
            row = db.get(Transaction, transaction_id)
            if row is None:
                return None, False
            if meta is not None:
                row.meta = {**(row.meta or {}), **meta}
            if row.confirmed:
                db.commit()
                return row, False
            row.confirmed = True
            db.commit()
            logger.info("ledger_confirmed id=%s hash=%s", row.id, row.transaction_hash)
            return row, True

    def backfill_meta(self, transaction_id: str, meta: dict) -> Transaction | None:
        with self.session_factory() as db:
            row = db.get(Transaction, transaction_id)
            if row is None:
                return None
            row.meta = {**(row.meta or {}), **meta}
            db.commit()
            return row

    def total_deposits(self, service_id: str, include_unconfirmed: bool = True) -> Decimal:
        """Sum of deposit rows for one subscription.

        Unconfirmed synthetic rows (opened but uncaptured orders) never count.
        """

        query = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.service_id == service_id,
            Transaction.transaction_type == DEPOSIT,
        )
        if include_unconfirmed:
            query = query.where(or_(Transaction.confirmed.is_(True), Transaction.synthetic.is_(False)))
        else:
            query = query.where(Transaction.confirmed.is_(True))
        with self.session_factory() as db:
            total = db.execute(query).scalar_one()
        return Decimal(str(total))

    def unconfirmed(self, limit: int = 500, max_checks: int | None = None) -> list[Transaction]:
        """Chain-backed rows still waiting for a receipt, least-checked first.

        Rows that already missed `max_checks` sweeps are left out.
        """

        query = select(Transaction).where(
            Transaction.confirmed.is_(False),
            Transaction.synthetic.is_(False),
            or_(Transaction.block_number >= 0, Transaction.transaction_type == WITHDRAWAL),
        )
        if max_checks is not None:
            query = query.where(Transaction.receipt_checks < max_checks)
        query = query.order_by(Transaction.receipt_checks, Transaction.created_at).limit(limit)
        with self.session_factory() as db:
            return list(db.execute(query).scalars().all())

    def note_receipt_miss(self, transaction_ids: list[str]) -> None:
        """Count one more sweep that found no successful receipt for these rows."""

        if not transaction_ids:
            return
        with self.session_factory() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.id.in_(transaction_ids), Transaction.confirmed.is_(False))
                .values(receipt_checks=Transaction.receipt_checks + 1)
            )
            db.commit()
