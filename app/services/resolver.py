"""
app/services/resolver.py

Calcula o conjunto mínimo de inboxes de destino de uma atividade.

- Destinatários explícitos em to/cc/bto/bcc são resolvidos pelo banco
- Public ou a coleção de followers expandem para os followers Accepted
- Inbox compartilhada tem preferência; deduplicação pela URL final,
  então um servidor com vários followers recebe uma entrega só
- Actors locais e a própria inbox do autor nunca são destino HTTP
- Sem destinatários, devolve lista vazia (nunca levanta)
"""

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub.composer import PUBLIC_ALIASES
from app.models.actor import Actor
from app.models.follow import Follow, FollowStatus

ADDRESSING_FIELDS = ("to", "cc", "bto", "bcc")


def addressed_to(activity: dict) -> list[str]:
    recipients = []
    for field in ADDRESSING_FIELDS:
        value = activity.get(field) or []
        if isinstance(value, str):
            value = [value]
        recipients.extend(value)
    return list(dict.fromkeys(recipients))


async def accepted_followers(session: AsyncSession, actor_id: str) -> list[Actor]:
    result = await session.execute(
        select(Actor)
        .join(Follow, Follow.actor_id == Actor.id)
        .where(
            Follow.target_actor_id == actor_id,
            Follow.status == FollowStatus.ACCEPTED,
        )
    )
    return list(result.scalars().all())


async def follower_inboxes(session: AsyncSession, actor_id: str) -> list[str]:
    """Inboxes remotas (já deduplicadas) dos followers de um actor."""
    followers = await accepted_followers(session, actor_id)
    return sorted({f.delivery_inbox for f in followers if not f.is_local and f.is_active})


async def resolve_inboxes(session: AsyncSession, actor: Actor, activity: dict) -> list[str]:
    recipients = addressed_to(activity)
    targets: dict[str, Actor] = {}

    expand_followers = False
    for recipient in recipients:
        if recipient in PUBLIC_ALIASES or recipient == actor.followers_url:
            expand_followers = True
            continue
        target = await session.get(Actor, recipient)
        if target is not None:
            targets[target.id] = target

    if expand_followers:
        for follower in await accepted_followers(session, actor.id):
            targets[follower.id] = follower

    own = {actor.inbox_url, actor.delivery_inbox}
    inboxes = {
        target.delivery_inbox
        for target in targets.values()
        if target.id != actor.id and not target.is_local and target.is_active
    }
    return sorted(inboxes - own)


@dataclass
class Outgoing:
    """Atividade pronta para a fila: calculada dentro da transação, enfileirada após o commit."""

    activity: dict
    actor_id: str
    inboxes: list[str] = field(default_factory=list)
    status_id: str | None = None


async def plan_delivery(
    session: AsyncSession, actor: Actor, activity: dict, status_id: str | None = None
) -> Outgoing:
    return Outgoing(
        activity=activity,
        actor_id=actor.id,
        inboxes=await resolve_inboxes(session, actor, activity),
        status_id=status_id,
    )
