"""
app/models/actor.py

Modelo ORM para actors locais e remotos.

Actors locais têm chave privada e pertencem à instância. Actors remotos são
espelhos somente leitura, atualizados pela descoberta (ver discovery.py).
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class DeletionStatus:
    NONE = "none"
    SCHEDULED = "scheduled"
    DELETING = "deleting"
    REMOVED = "removed"

    ORDER = (NONE, SCHEDULED, DELETING, REMOVED)


class Actor(Base):
    __tablename__ = "actors"
    __table_args__ = (UniqueConstraint("username", "domain", name="uq_actors_handle"),)

    # URI canônica do actor, ex: "https://mastodon.social/users/fulano"
    id: Mapped[str] = mapped_column(String(2048), primary_key=True)

    username: Mapped[str] = mapped_column(String(255))
    domain: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), default="")
    summary: Mapped[str] = mapped_column(Text, default="")

    inbox_url: Mapped[str] = mapped_column(String(2048))
    shared_inbox_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    followers_url: Mapped[str] = mapped_column(String(2048))

    public_key_pem: Mapped[str] = mapped_column(Text)
    # Só existe para actors locais
    private_key_pem: Mapped[str | None] = mapped_column(Text, nullable=True)

    manually_approves_followers: Mapped[bool] = mapped_column(Boolean, default=False)
    default_visibility: Mapped[str] = mapped_column(String(16), default="public")
    deletion_status: Mapped[str] = mapped_column(String(16), default=DeletionStatus.NONE)

    # Última vez que o documento remoto foi buscado
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        insert_default=utcnow,
        onupdate=utcnow,
    )

    @property
    def is_local(self) -> bool:
        return self.private_key_pem is not None

    @property
    def key_id(self) -> str:
        return f"{self.id}#main-key"

    @property
    def handle(self) -> str:
        return f"{self.username}@{self.domain}"

    @property
    def delivery_inbox(self) -> str:
        """Inbox compartilhada quando o servidor remoto expõe uma."""
        return self.shared_inbox_url or self.inbox_url

    @property
    def is_active(self) -> bool:
        return self.deletion_status == DeletionStatus.NONE

    def advance_deletion(self, target: str) -> None:
        """Avança a máquina de estados none → scheduled → deleting → removed."""
        current = DeletionStatus.ORDER.index(self.deletion_status)
        wanted = DeletionStatus.ORDER.index(target)
        if wanted < current:
            raise ValueError(
                f"Transição inválida de {self.deletion_status!r} para {target!r}"
            )
        self.deletion_status = target

    def __repr__(self) -> str:
        return f"<Actor id={self.id!r}>"
