"""Credit transaction model for audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Numeric, String, event
from sqlalchemy.orm import Mapped, mapped_column

from kaiwa_billing.models.base import Base, JSONType, UTCDateTime, utcnow


class CreditTransaction(Base):
    """Audit log for all credit movements.

    Rows are append-only. Corrections are new compensating rows
    (refunds, adjustments), never edits:
    - Charges (metered AI usage, including zero-amount unlimited usage)
    - Bonuses (voucher credits)
    - Refunds (reversal of an earlier charge)
    - Grants (trial and monthly allowances)
    - Adjustments (manual corrections)
    """

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    user_id: Mapped[str] = mapped_column(String(64), index=True)

    # Transaction type: charge, bonus, refund, grant, adjustment
    type: Mapped[str] = mapped_column(String(20), index=True)

    # Amount: positive for credits in, negative for credits out
    amount: Mapped[int] = mapped_column()

    # Running balance after this transaction
    balance_after: Mapped[int] = mapped_column()

    # What caused it: chat message id, voucher code, ...
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # For charges: billing category and raw provider cost
    usage_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    usd_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 10), nullable=True)

    # For idempotency: prevent double-charging
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )

    # Additional context (cost breakdown, voucher id, original transaction, ...)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(type={self.type!r}, amount={self.amount}, "
            f"user_id={self.user_id!r}, balance_after={self.balance_after})>"
        )


@event.listens_for(CreditTransaction, "before_update")
def _reject_update(mapper, connection, target: CreditTransaction) -> None:
    msg = f"Credit transactions are append-only, refusing to update {target.id}"
    raise ValueError(msg)
