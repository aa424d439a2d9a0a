from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class Like(Base):
    __tablename__ = "likes"
    __table_args__ = (UniqueConstraint("actor_id", "status_id", name="uq_likes_edge"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), index=True)
    status_id: Mapped[str] = mapped_column(ForeignKey("statuses.id"), index=True)
    activity_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<Like {self.actor_id!r} -> {self.status_id!r}>"
