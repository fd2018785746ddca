from datetime import datetime
from uuid import UUID, uuid4
from sqlalchemy import String, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base
from app.modules.billing.domain.billing.subscription import utcnow


class ProcessedWebhookEvent(Base):
    """
    Provider event ids that were handled to completion.
    Redeliveries of these ids are acknowledged without side effects.
    """
    __tablename__ = "processed_webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)  # evt_xxx
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow
    )
