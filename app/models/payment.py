import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, String, Numeric, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("ride_id", "idempotency_key", name="uq_payment_transactions_ride_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    ride_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    rider_id: Mapped[str] = mapped_column(String, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)

    # capture | tip | refund
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="capture")
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), default="USD")
    # pending | succeeded | failed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    failure_reason: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
