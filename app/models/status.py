"""
app/models/status.py

Modelos ORM para status publicados (Note, Question, Announce) e o histórico
de edições.

Um Announce sempre referencia o status original; um Note nunca referencia.
A coluna `version` é o contador de concorrência otimista: toda escrita é um
compare-and-set contra a versão lida.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, as_utc, utcnow


class StatusType:
    NOTE = "Note"
    QUESTION = "Question"
    ANNOUNCE = "Announce"


class Visibility:
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"
    DIRECT = "direct"

    ALL = (PUBLIC, UNLISTED, PRIVATE, DIRECT)


class Status(Base):
    __tablename__ = "statuses"
    __table_args__ = (
        CheckConstraint(
            "(type = 'Announce') = (original_status_id IS NOT NULL)",
            name="ck_statuses_announce_original",
        ),
    )

    id: Mapped[str] = mapped_column(String(2048), primary_key=True)
    actor_id: Mapped[str] = mapped_column(ForeignKey("actors.id"), index=True)
    type: Mapped[str] = mapped_column(String(16), default=StatusType.NOTE)

    content: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[str] = mapped_column(String(16), default=Visibility.PUBLIC)
    to: Mapped[list] = mapped_column(JSON, default=list)
    cc: Mapped[list] = mapped_column(JSON, default=list)

    reply_id: Mapped[str | None] = mapped_column(String(2048), nullable=True, index=True)
    original_status_id: Mapped[str | None] = mapped_column(
        String(2048), nullable=True, index=True
    )
    poll_choices: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # anyOf: cada actor pode votar em mais de uma opção
    poll_multiple: Mapped[bool] = mapped_column(Boolean, default=False)
    poll_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Totais anunciados pelo servidor de origem (enquetes remotas)
    poll_totals: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )
    # Tombstone: o status continua existindo para tornar o Delete idempotente
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_tombstoned(self) -> bool:
        return self.deleted_at is not None

    @property
    def poll_closed(self) -> bool:
        ends_at = as_utc(self.poll_ends_at)
        return ends_at is not None and ends_at <= utcnow()

    @property
    def recipients(self) -> list[str]:
        return [*(self.to or []), *(self.cc or [])]

    def __repr__(self) -> str:
        return f"<Status id={self.id!r} type={self.type!r} version={self.version}>"


class StatusEdit(Base):
    """Versão anterior de um status, gravada a cada edição."""

    __tablename__ = "status_edits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status_id: Mapped[str] = mapped_column(ForeignKey("statuses.id"), index=True)
    content: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    poll_choices: Mapped[list | None] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer)
    edited_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )
