"""
app/models/delivery_job.py

Job de entrega: uma atividade para uma inbox de destino.

`identity_key` é o hash de (activity_id, inbox) e garante idempotência do
enqueue. `locked_by`/`locked_until` indicam qual worker é dono da execução.
"""

import hashlib
from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class JobStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    FAILED = "failed"


def identity_key(activity_id: str, inbox: str) -> str:
    return hashlib.sha256(f"{activity_id}\n{inbox}".encode()).hexdigest()


class DeliveryJob(Base):
    __tablename__ = "delivery_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_key: Mapped[str] = mapped_column(String(64), unique=True)

    activity_id: Mapped[str] = mapped_column(String(2048), index=True)
    activity_type: Mapped[str] = mapped_column(String(32))
    actor_id: Mapped[str] = mapped_column(String(2048))
    # Status de origem; apagado antes da entrega, o job é cancelado
    status_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    inbox: Mapped[str] = mapped_column(String(2048))
    payload: Mapped[dict] = mapped_column(JSON)

    status: Mapped[str] = mapped_column(String(16), default=JobStatus.PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
        index=True,
    )
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryJob id={self.id} inbox={self.inbox!r} "
            f"status={self.status!r} attempts={self.attempts}>"
        )
