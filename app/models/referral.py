from uuid import UUID, uuid4
from enum import Enum
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, ForeignKey, DateTime, Boolean, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from app.shared.db.base import Base


class ReferralStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CONVERTED = "converted"  # Referred tenant subscribed to Pro
    EXPIRED = "expired"

class ReferralInvitation(Base):
    """
    Invitation sent by an existing user to a prospective one.

    Owned by the referrals feature; billing only reads it and flips it
    from accepted to converted when the referred tenant upgrades.
    """
    __tablename__ = "referral_invitations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    referred_by_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    referred_user_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    status: Mapped[str] = mapped_column(String(20), default=ReferralStatus.PENDING.value, index=True)
    reward_earned: Mapped[bool] = mapped_column(Boolean, default=False)

    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_convertible(self) -> bool:
        return self.status == ReferralStatus.ACCEPTED.value and not self.reward_earned
