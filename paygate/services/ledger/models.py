"""Ledger database model: one append-only row per observed transfer or charge."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from paygate.common.db import Base, JSONType


DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"


class Transaction(Base):
    """Immutable payment record; only `confirmed` and `meta` may change."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("service_id", "transaction_hash", "log_index", name="uq_transactions_event"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    service_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), index=True)
    transaction_hash: Mapped[str] = mapped_column(String, index=True)
    # Position of the log inside the chain transaction; -1 for rail payments.
    log_index: Mapped[int] = mapped_column(Integer, default=-1)
    synthetic: Mapped[bool] = mapped_column(Boolean, default=False)
    from_address: Mapped[str | None] = mapped_column(String, nullable=True)
    to_address: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18))
    token_address: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_type: Mapped[str] = mapped_column(String, index=True)
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    block_number: Mapped[int] = mapped_column(Integer, default=-1)
    # Confirmation sweeps that found no successful receipt.
    receipt_checks: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def to_payload(self) -> dict:
        """JSON-safe view sent to the validator with status notifications."""

        return {
            "id": self.id,
            "serviceId": self.service_id,
            "transactionHash": self.transaction_hash,
            "fromAddress": self.from_address,
            "toAddress": self.to_address,
            "amount": str(self.amount),
            "tokenAddress": self.token_address,
            "transactionType": self.transaction_type,
            "confirmed": self.confirmed,
            "blockNumber": self.block_number,
            "meta": self.meta,
        }
