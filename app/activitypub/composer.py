"""
app/activitypub/composer.py

Monta os documentos de atividade de saída a partir de ações de domínio.

Sem efeitos colaterais: persistir e enfileirar é responsabilidade de quem
chama (ver services/actions.py).

Endereçamento por visibilidade:
- public   → to [Public]              cc [followers, menções]
- unlisted → to [followers]           cc [Public, menções]
- private  → to [followers]           cc [menções]
- direct   → to [menções]             cc []
Respostas incluem o autor do status pai.
"""

import uuid

from app.database import utcnow
from app.errors import InvalidActionError
from app.models.actor import Actor
from app.models.follow import Follow
from app.models.status import Status, StatusType, Visibility

ACTIVITY_STREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
PUBLIC_ALIASES = (PUBLIC, "as:Public", "Public")


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(item for item in items if item))


def _isoformat(value) -> str:
    return value.isoformat().replace("+00:00", "Z") if value else utcnow().isoformat()


def recipients_to(
    actor: Actor,
    mentions: list[str],
    reply_to: Status | None,
    visibility: str,
) -> list[str]:
    if visibility not in Visibility.ALL:
        raise InvalidActionError(f"Visibilidade desconhecida: {visibility!r}")

    if visibility == Visibility.DIRECT:
        recipients = list(mentions)
        if reply_to:
            recipients.append(reply_to.actor_id)
        return _unique(recipients)

    if visibility == Visibility.PUBLIC:
        if reply_to:
            return _unique([PUBLIC, actor.followers_url, reply_to.actor_id])
        return [PUBLIC]

    if reply_to:
        return _unique([actor.followers_url, reply_to.actor_id])
    return [actor.followers_url]


def recipients_cc(actor: Actor, mentions: list[str], visibility: str) -> list[str]:
    if visibility not in Visibility.ALL:
        raise InvalidActionError(f"Visibilidade desconhecida: {visibility!r}")

    if visibility == Visibility.DIRECT:
        return []
    if visibility == Visibility.PRIVATE:
        return _unique(mentions)
    if visibility == Visibility.UNLISTED:
        return _unique([PUBLIC, *mentions])
    return _unique([actor.followers_url, *mentions])


def visibility_from_addressing(to: list[str], cc: list[str], followers_url: str | None = None) -> str:
    """Deriva a visibilidade de um status a partir de to/cc (usado em respostas e no inbox)."""
    if any(item in PUBLIC_ALIASES for item in to):
        return Visibility.PUBLIC
    if any(item in PUBLIC_ALIASES for item in cc):
        return Visibility.UNLISTED
    addressed = [*to, *cc]
    if followers_url and followers_url in addressed:
        return Visibility.PRIVATE
    if any(item.endswith("/followers") for item in addressed):
        return Visibility.PRIVATE
    return Visibility.DIRECT


def new_status_id(actor: Actor) -> str:
    return f"{actor.id}/statuses/{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# Objetos
# ---------------------------------------------------------------------------

def note_object(
    status: Status, mentions: list[str] | None = None, votes: list[int] | None = None
) -> dict:
    """
    Note ou Question equivalente a um status local. `votes` traz a contagem
    agregada por opção (timeline.poll_votes) e vira `replies.totalItems`.
    """
    if status.type == StatusType.ANNOUNCE:
        raise InvalidActionError("Announce não tem objeto Note")

    obj = {
        "id": status.id,
        "type": status.type,
        "attributedTo": status.actor_id,
        "content": status.content,
        "summary": status.summary,
        "inReplyTo": status.reply_id,
        "published": _isoformat(status.created_at),
        "to": list(status.to or []),
        "cc": list(status.cc or []),
        "tag": [{"type": "Mention", "href": href} for href in (mentions or [])],
    }
    if status.updated_at and status.created_at and status.updated_at != status.created_at:
        obj["updated"] = _isoformat(status.updated_at)
    if status.type == StatusType.QUESTION:
        choices = status.poll_choices or []
        votes = list(votes or [])
        votes += [0] * (len(choices) - len(votes))
        obj["anyOf" if status.poll_multiple else "oneOf"] = [
            {"type": "Note", "name": choice, "replies": {"type": "Collection", "totalItems": count}}
            for choice, count in zip(choices, votes)
        ]
        if status.poll_ends_at:
            obj["endTime"] = _isoformat(status.poll_ends_at)
    return obj


# ---------------------------------------------------------------------------
# Atividades
# ---------------------------------------------------------------------------

def _activity(activity_id: str, type_: str, actor: Actor, obj, to=None, cc=None) -> dict:
    if not actor.is_local:
        raise InvalidActionError(f"Actor {actor.id} não é local")
    activity = {
        "@context": ACTIVITY_STREAMS_CONTEXT,
        "id": activity_id,
        "type": type_,
        "actor": actor.id,
        "object": obj,
        "published": _isoformat(utcnow()),
    }
    if to is not None:
        activity["to"] = list(to)
    if cc is not None:
        activity["cc"] = list(cc)
    return activity


def create_activity(actor: Actor, status: Status | None, mentions: list[str] | None = None) -> dict:
    if status is None:
        raise InvalidActionError("Status inexistente")
    activity = _activity(
        f"{status.id}/activity", "Create", actor, note_object(status, mentions),
        to=status.to, cc=status.cc,
    )
    activity["published"] = _isoformat(status.created_at)
    return activity


def update_activity(
    actor: Actor,
    status: Status | None,
    mentions: list[str] | None = None,
    votes: list[int] | None = None,
) -> dict:
    if status is None:
        raise InvalidActionError("Status inexistente")
    return _activity(
        f"{status.id}#updates/{status.version}", "Update", actor,
        note_object(status, mentions, votes), to=status.to, cc=status.cc,
    )


def delete_activity(actor: Actor, status: Status | None) -> dict:
    if status is None:
        raise InvalidActionError("Status inexistente")
    return _activity(
        f"{status.id}#delete", "Delete", actor,
        {"id": status.id, "type": "Tombstone"},
        to=[PUBLIC], cc=_unique([actor.followers_url, *(status.to or []), *(status.cc or [])]),
    )


def delete_actor_activity(actor: Actor) -> dict:
    return _activity(f"{actor.id}#delete", "Delete", actor, actor.id, to=[PUBLIC], cc=[actor.followers_url])


def announce_activity(actor: Actor, announce: Status | None, original: Status | None) -> dict:
    if announce is None or original is None:
        raise InvalidActionError("Status inexistente")
    if announce.type != StatusType.ANNOUNCE:
        raise InvalidActionError("Status não é um Announce")
    activity = _activity(
        f"{announce.id}/activity", "Announce", actor, original.id,
        to=announce.to, cc=announce.cc,
    )
    activity["published"] = _isoformat(announce.created_at)
    return activity


def follow_activity(actor: Actor, target: Actor | None, follow: Follow) -> dict:
    if target is None:
        raise InvalidActionError("Actor alvo inexistente")
    return _activity(
        follow.activity_id or f"{actor.id}#follows/{follow.id}",
        "Follow", actor, target.id, to=[target.id],
    )


def _follow_reference(follow: Follow) -> dict:
    return {
        "id": follow.activity_id,
        "type": "Follow",
        "actor": follow.actor_id,
        "object": follow.target_actor_id,
    }


def accept_activity(actor: Actor, follow: Follow | None) -> dict:
    if follow is None:
        raise InvalidActionError("Follow inexistente")
    return _activity(
        f"{actor.id}#accepts/{follow.id}", "Accept", actor,
        _follow_reference(follow), to=[follow.actor_id],
    )


def reject_activity(actor: Actor, follow: Follow | None) -> dict:
    if follow is None:
        raise InvalidActionError("Follow inexistente")
    return _activity(
        f"{actor.id}#rejects/{follow.id}", "Reject", actor,
        _follow_reference(follow), to=[follow.actor_id],
    )


def like_activity(actor: Actor, status: Status | None) -> dict:
    if status is None:
        raise InvalidActionError("Status inexistente")
    return _activity(
        f"{actor.id}#likes/{uuid.uuid4()}",
        "Like", actor, status.id, to=[status.actor_id],
    )


def undo_activity(actor: Actor, activity: dict) -> dict:
    """Undo de uma atividade anterior do mesmo actor (Follow, Like, Announce)."""
    if activity.get("actor") != actor.id:
        raise InvalidActionError("Só é possível desfazer atividades próprias")
    inner = {key: value for key, value in activity.items() if key != "@context"}
    return _activity(
        f"{activity['id']}#undo", "Undo", actor, inner,
        to=activity.get("to"), cc=activity.get("cc"),
    )
