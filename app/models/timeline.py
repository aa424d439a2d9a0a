from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class TimelineKind:
    HOME = "home"
    MENTION = "mention"
    # Timelines da instância inteira: dono é INSTANCE_OWNER
    LOCAL = "local"
    PUBLIC = "public"


INSTANCE_OWNER = ""


class TimelineEntry(Base):
    __tablename__ = "timeline_entries"
    __table_args__ = (
        UniqueConstraint("kind", "owner_id", "status_id", name="uq_timeline_entry"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16))
    owner_id: Mapped[str] = mapped_column(String(2048), index=True, default=INSTANCE_OWNER)
    status_id: Mapped[str] = mapped_column(String(2048), index=True)
    # Copiado do status para ordenar sem join
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<TimelineEntry {self.kind} owner={self.owner_id!r} status={self.status_id!r}>"
