"""
app/models/notification.py

Notificações derivadas de eventos aceitos. `group_key` agrupa eventos
equivalentes (ex: "like:<status>") e evita duplicatas do mesmo actor.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class NotificationType:
    FOLLOW_REQUEST = "follow_request"
    FOLLOW = "follow"
    LIKE = "like"
    MENTION = "mention"
    REPLY = "reply"
    REBLOG = "reblog"


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Destinatário da notificação
    actor_id: Mapped[str] = mapped_column(String(2048), index=True)
    type: Mapped[str] = mapped_column(String(32))
    source_actor_id: Mapped[str] = mapped_column(String(2048))
    status_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    follow_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    group_key: Mapped[str | None] = mapped_column(String(2100), nullable=True, index=True)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Notification {self.type} actor={self.actor_id!r}>"
