"""
app/models/poll_vote.py

Voto de um actor em uma opção de enquete local. A contagem por opção é
sempre agregada a partir destas arestas, nunca guardada em contador.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class PollVote(Base):
    __tablename__ = "poll_votes"
    __table_args__ = (
        UniqueConstraint("actor_id", "status_id", "choice", name="uq_poll_votes_edge"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), index=True)
    status_id: Mapped[str] = mapped_column(ForeignKey("statuses.id"), index=True)
    # Índice da opção em Status.poll_choices
    choice: Mapped[int] = mapped_column(Integer)
    activity_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<PollVote {self.actor_id!r} -> {self.status_id!r}[{self.choice}]>"
