"""Escrow wallet model: one gateway-held deposit address per subscription."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from paygate.common.db import Base


class EscrowWallet(Base):
    __tablename__ = "escrow_wallets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    service_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), unique=True, index=True)
    address: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Fernet token of the hex private key; plaintext never reaches the database.
    encrypted_private_key: Mapped[str] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
