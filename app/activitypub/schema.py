"""
app/activitypub/schema.py

Atividades recebidas modeladas como união etiquetada pelo campo `type`.

`parse_activity()` escolhe o modelo pelo tipo; tipos fora da lista viram
`UnknownActivity`, que o processador rejeita. Campos obrigatórios ausentes
levantam ValidationError (400).
"""

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.errors import ValidationError

NOTE_TYPES = ("Note", "Question", "Article", "Page")


def _as_id(value):
    if isinstance(value, dict):
        return value.get("id")
    return value


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    return [_as_id(item) for item in value if _as_id(item)]


def object_id(value) -> str | None:
    """`object` pode vir como URI ou como objeto embutido."""
    value = _as_id(value)
    return value if isinstance(value, str) else None


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class NoteObject(_Model):
    id: str
    type: str
    attributed_to: str = Field(alias="attributedTo")
    content: str = ""
    summary: str | None = None
    name: str | None = None
    in_reply_to: str | None = Field(default=None, alias="inReplyTo")
    published: str | None = None
    updated: str | None = None
    to: list[str] = []
    cc: list[str] = []
    tag: list[dict] = []
    one_of: list[dict] | None = Field(default=None, alias="oneOf")
    any_of: list[dict] | None = Field(default=None, alias="anyOf")
    end_time: str | None = Field(default=None, alias="endTime")

    @field_validator("attributed_to", "in_reply_to", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _as_id(value)

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, value):
        return value or ""

    @field_validator("to", "cc", mode="before")
    @classmethod
    def coerce_lists(cls, value):
        return _as_list(value)

    @field_validator("tag", mode="before")
    @classmethod
    def coerce_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return [item for item in value if isinstance(item, dict)]

    @property
    def mentions(self) -> list[str]:
        return [t["href"] for t in self.tag if t.get("type") == "Mention" and t.get("href")]

    @property
    def poll_choices(self) -> list[str] | None:
        options = self.one_of or self.any_of
        if options is None:
            return None
        return [option.get("name", "") for option in options]

    @property
    def poll_multiple(self) -> bool:
        return self.one_of is None and self.any_of is not None

    @property
    def poll_totals(self) -> list[int] | None:
        """Votos por opção como o servidor de origem anuncia (`replies.totalItems`)."""
        options = self.one_of or self.any_of
        if options is None:
            return None
        totals = []
        for option in options:
            replies = option.get("replies")
            count = replies.get("totalItems") if isinstance(replies, dict) else None
            totals.append(count if isinstance(count, int) and count >= 0 else 0)
        return totals

    @property
    def is_vote(self) -> bool:
        """Formato de voto: Note com `name`, em resposta a algo, sem conteúdo."""
        return (
            self.type == "Note"
            and bool(self.name)
            and bool(self.in_reply_to)
            and not self.content.strip()
        )


class ActivityBase(_Model):
    id: str
    type: str
    actor: str
    to: list[str] = []
    cc: list[str] = []

    @field_validator("actor", mode="before")
    @classmethod
    def coerce_actor(cls, value):
        return _as_id(value)

    @field_validator("to", "cc", mode="before")
    @classmethod
    def coerce_lists(cls, value):
        return _as_list(value)


class CreateActivity(ActivityBase):
    type: Literal["Create"]
    object: dict


class UpdateActivity(ActivityBase):
    type: Literal["Update"]
    object: dict


class DeleteActivity(ActivityBase):
    type: Literal["Delete"]
    object: str | dict


class FollowActivity(ActivityBase):
    type: Literal["Follow"]
    object: str | dict


class AcceptActivity(ActivityBase):
    type: Literal["Accept"]
    object: str | dict


class RejectActivity(ActivityBase):
    type: Literal["Reject"]
    object: str | dict


class LikeActivity(ActivityBase):
    type: Literal["Like"]
    object: str | dict


class AnnounceActivity(ActivityBase):
    type: Literal["Announce"]
    object: str | dict


class UndoActivity(ActivityBase):
    type: Literal["Undo"]
    object: str | dict


class UnknownActivity(ActivityBase):
    object: str | dict | None = None


Activity = Union[
    CreateActivity,
    UpdateActivity,
    DeleteActivity,
    FollowActivity,
    AcceptActivity,
    RejectActivity,
    LikeActivity,
    AnnounceActivity,
    UndoActivity,
    UnknownActivity,
]

ACTIVITY_TYPES: dict[str, type[ActivityBase]] = {
    "Create": CreateActivity,
    "Update": UpdateActivity,
    "Delete": DeleteActivity,
    "Follow": FollowActivity,
    "Accept": AcceptActivity,
    "Reject": RejectActivity,
    "Like": LikeActivity,
    "Announce": AnnounceActivity,
    "Undo": UndoActivity,
}


def parse_activity(payload) -> Activity:
    if not isinstance(payload, dict):
        raise ValidationError("Atividade deve ser um objeto JSON")
    model = ACTIVITY_TYPES.get(payload.get("type"), UnknownActivity)
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Atividade {payload.get('type')!r} inválida: {e}") from e


def parse_note(payload: dict) -> NoteObject:
    try:
        return NoteObject.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Objeto {payload.get('type')!r} inválido: {e}") from e
