"""
app/models/follow.py

Aresta dirigida actor → target com estado Requested/Accepted/Rejected/Undo.

Existe no máximo uma aresta diferente de Undo por par (índice único parcial).
Undo é terminal: um novo Follow cria outra aresta.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class FollowStatus:
    REQUESTED = "Requested"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    UNDO = "Undo"


class Follow(Base):
    __tablename__ = "follows"
    __table_args__ = (
        Index(
            "uq_follows_open_pair",
            "actor_id",
            "target_actor_id",
            unique=True,
            sqlite_where=text("status != 'Undo'"),
            postgresql_where=text("status != 'Undo'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    actor_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), index=True)
    target_actor_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), default=FollowStatus.REQUESTED)

    # URI da atividade Follow, usada para casar Accept/Reject/Undo remotos
    activity_id: Mapped[str | None] = mapped_column(String(2048), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
        onupdate=utcnow,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Follow {self.actor_id!r} -> {self.target_actor_id!r} "
            f"status={self.status!r}>"
        )
