"""User SQLAlchemy model. Identities live in the external provider; this is the local mirror."""

import enum
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UserRole(enum.Enum):
    USER = "user"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=UserRole.USER,
    )
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payout_account_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    @property
    def balance(self) -> Decimal:
        return (Decimal(self.balance_cents) / 100).quantize(Decimal("0.01"))

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_payable(self) -> bool:
        """A payee needs a verified payout account before money can be routed to them."""
        return bool(self.payout_account_id) and self.payouts_enabled
