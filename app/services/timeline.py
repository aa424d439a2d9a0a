"""
app/services/timeline.py

Materializa as visões derivadas (timelines e notificações) a partir das
mutações já aceitas no banco, e responde às leituras paginadas.

Regra da home: um status entra na home de X se X é o autor, se X segue o
autor (Accepted) ou se o status é endereçado diretamente a X. A regra é
avaliada no momento da aceitação; follows novos não trazem posts antigos.

O banco é a fonte da verdade: contagens são sempre agregadas, nunca
armazenadas.
"""

import logging

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.actor import Actor
from app.models.follow import Follow, FollowStatus
from app.models.like import Like
from app.models.notification import Notification, NotificationType
from app.models.poll_vote import PollVote
from app.models.status import Status, StatusType, Visibility
from app.models.timeline import INSTANCE_OWNER, TimelineEntry, TimelineKind

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 80


# ---------------------------------------------------------------------------
# Timelines
# ---------------------------------------------------------------------------

async def _local_actors(session: AsyncSession, actor_ids) -> list[Actor]:
    actor_ids = [actor_id for actor_id in actor_ids if actor_id]
    if not actor_ids:
        return []
    result = await session.execute(
        select(Actor).where(Actor.id.in_(actor_ids), Actor.private_key_pem.is_not(None))
    )
    return list(result.scalars().all())


async def _local_followers(session: AsyncSession, actor_id: str) -> list[str]:
    result = await session.execute(
        select(Follow.actor_id)
        .join(Actor, Actor.id == Follow.actor_id)
        .where(
            Follow.target_actor_id == actor_id,
            Follow.status == FollowStatus.ACCEPTED,
            Actor.private_key_pem.is_not(None),
        )
    )
    return list(result.scalars().all())


async def _has_entry(session: AsyncSession, kind: str, owner_id: str, status_id: str) -> bool:
    found = await session.scalar(
        select(TimelineEntry.id).where(
            TimelineEntry.kind == kind,
            TimelineEntry.owner_id == owner_id,
            TimelineEntry.status_id == status_id,
        )
    )
    return found is not None


async def _insert_entry(session: AsyncSession, kind: str, owner_id: str, status: Status) -> bool:
    if await _has_entry(session, kind, owner_id, status.id):
        return False
    session.add(
        TimelineEntry(
            kind=kind,
            owner_id=owner_id,
            status_id=status.id,
            created_at=status.created_at or utcnow(),
        )
    )
    return True


async def add_status_to_timelines(session: AsyncSession, status: Status) -> list[tuple[str, str]]:
    """
    Insere o status nas timelines que devem vê-lo.
    Retorna os pares (kind, owner) efetivamente inseridos.
    """
    if status.is_tombstoned:
        return []

    author = await session.get(Actor, status.actor_id)
    addressed = await _local_actors(session, status.recipients)

    home_owners: set[str] = set()
    if author is not None and author.is_local:
        home_owners.add(author.id)
    # Mensagem direta só aparece para quem foi endereçado
    if status.visibility != Visibility.DIRECT:
        home_owners.update(await _local_followers(session, status.actor_id))
    home_owners.update(actor.id for actor in addressed)

    inserted = []
    for owner_id in sorted(home_owners):
        # Boost de algo que já está na home não duplica a entrada
        if status.type == StatusType.ANNOUNCE and await _has_entry(
            session, TimelineKind.HOME, owner_id, status.original_status_id
        ):
            continue
        if await _insert_entry(session, TimelineKind.HOME, owner_id, status):
            inserted.append((TimelineKind.HOME, owner_id))

    if status.type != StatusType.ANNOUNCE:
        for actor in addressed:
            if actor.id != status.actor_id and await _insert_entry(
                session, TimelineKind.MENTION, actor.id, status
            ):
                inserted.append((TimelineKind.MENTION, actor.id))

        if status.visibility == Visibility.PUBLIC:
            if await _insert_entry(session, TimelineKind.PUBLIC, INSTANCE_OWNER, status):
                inserted.append((TimelineKind.PUBLIC, INSTANCE_OWNER))
            if author is not None and author.is_local and await _insert_entry(
                session, TimelineKind.LOCAL, INSTANCE_OWNER, status
            ):
                inserted.append((TimelineKind.LOCAL, INSTANCE_OWNER))

    await session.flush()
    log.debug(f"Status {status.id} materializado em {len(inserted)} timeline(s)")
    return inserted


async def remove_status_from_timelines(session: AsyncSession, status_id: str) -> int:
    result = await session.execute(
        delete(TimelineEntry)
        .where(TimelineEntry.status_id == status_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def get_timeline(
    session: AsyncSession,
    kind: str,
    owner_id: str = INSTANCE_OWNER,
    limit: int = DEFAULT_PAGE_SIZE,
    max_id: str | None = None,
    since_id: str | None = None,
) -> list[Status]:
    """Página da timeline, do mais novo para o mais antigo. Cursores são ids de status."""
    query = (
        select(Status)
        .join(TimelineEntry, TimelineEntry.status_id == Status.id)
        .where(
            TimelineEntry.kind == kind,
            TimelineEntry.owner_id == owner_id,
            Status.deleted_at.is_(None),
        )
        .order_by(TimelineEntry.created_at.desc(), TimelineEntry.id.desc())
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
    )

    async def _cursor(status_id):
        result = await session.execute(
            select(TimelineEntry.created_at, TimelineEntry.id).where(
                TimelineEntry.kind == kind,
                TimelineEntry.owner_id == owner_id,
                TimelineEntry.status_id == status_id,
            )
        )
        return result.first()

    if max_id:
        cursor = await _cursor(max_id)
        if cursor:
            query = query.where(
                or_(
                    TimelineEntry.created_at < cursor.created_at,
                    and_(TimelineEntry.created_at == cursor.created_at, TimelineEntry.id < cursor.id),
                )
            )
    if since_id:
        cursor = await _cursor(since_id)
        if cursor:
            query = query.where(
                or_(
                    TimelineEntry.created_at > cursor.created_at,
                    and_(TimelineEntry.created_at == cursor.created_at, TimelineEntry.id > cursor.id),
                )
            )

    result = await session.execute(query)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Notificações
# ---------------------------------------------------------------------------

async def create_notification(
    session: AsyncSession,
    actor_id: str,
    type: str,
    source_actor_id: str,
    status_id: str | None = None,
    follow_id: str | None = None,
    group_key: str | None = None,
) -> Notification | None:
    """
    Cria a notificação para um actor local. O mesmo evento repetido (mesmo
    tipo, origem, status e group_key) é colapsado na notificação existente.
    """
    if actor_id == source_actor_id:
        return None
    recipient = await session.get(Actor, actor_id)
    if recipient is None or not recipient.is_local:
        return None

    existing = await session.scalar(
        select(Notification).where(
            Notification.actor_id == actor_id,
            Notification.type == type,
            Notification.source_actor_id == source_actor_id,
            Notification.status_id.is_(None) if status_id is None else Notification.status_id == status_id,
            Notification.group_key.is_(None) if group_key is None else Notification.group_key == group_key,
        )
    )
    if existing is not None:
        return existing

    notification = Notification(
        actor_id=actor_id,
        type=type,
        source_actor_id=source_actor_id,
        status_id=status_id,
        follow_id=follow_id,
        group_key=group_key,
        is_read=False,
        created_at=utcnow(),
    )
    session.add(notification)
    await session.flush()
    return notification


async def notify_for_status(
    session: AsyncSession, status: Status, mentions: list[str] | None = None
) -> list[Notification]:
    """Notificações de resposta e menção geradas por um status novo."""
    created = []

    if status.reply_id:
        parent = await session.get(Status, status.reply_id)
        if parent is not None and not parent.is_tombstoned:
            notification = await create_notification(
                session,
                actor_id=parent.actor_id,
                type=NotificationType.REPLY,
                source_actor_id=status.actor_id,
                status_id=status.id,
                group_key=f"reply:{parent.id}",
            )
            if notification:
                created.append(notification)

    mentioned = list(mentions or [])
    if status.visibility == Visibility.DIRECT:
        mentioned.extend(status.to or [])
    for actor in await _local_actors(session, set(mentioned)):
        notification = await create_notification(
            session,
            actor_id=actor.id,
            type=NotificationType.MENTION,
            source_actor_id=status.actor_id,
            status_id=status.id,
            group_key=f"mention:{status.id}",
        )
        if notification:
            created.append(notification)
    return created


async def delete_notifications(
    session: AsyncSession,
    status_id: str | None = None,
    source_actor_id: str | None = None,
    type: str | None = None,
    follow_id: str | None = None,
) -> int:
    conditions = []
    if status_id is not None:
        conditions.append(Notification.status_id == status_id)
    if source_actor_id is not None:
        conditions.append(Notification.source_actor_id == source_actor_id)
    if type is not None:
        conditions.append(Notification.type == type)
    if follow_id is not None:
        conditions.append(Notification.follow_id == follow_id)
    if not conditions:
        raise ValueError("delete_notifications exige ao menos um filtro")
    result = await session.execute(
        delete(Notification).where(*conditions).execution_options(synchronize_session=False)
    )
    return result.rowcount


async def dismiss_notification(session: AsyncSession, actor_id: str, notification_id: str) -> bool:
    result = await session.execute(
        delete(Notification)
        .where(Notification.id == notification_id, Notification.actor_id == actor_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def clear_notifications(session: AsyncSession, actor_id: str) -> int:
    result = await session.execute(
        delete(Notification)
        .where(Notification.actor_id == actor_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def mark_read(
    session: AsyncSession, actor_id: str, notification_ids: list[str]
) -> int:
    if not notification_ids:
        return 0
    now = utcnow()
    result = await session.execute(
        update(Notification)
        .where(Notification.actor_id == actor_id, Notification.id.in_(notification_ids))
        .values(is_read=True, read_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def get_notifications(
    session: AsyncSession,
    actor_id: str,
    limit: int = DEFAULT_PAGE_SIZE,
    max_id: str | None = None,
    types: list[str] | None = None,
    exclude_types: list[str] | None = None,
    only_unread: bool = False,
) -> list[Notification]:
    query = (
        select(Notification)
        .where(Notification.actor_id == actor_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
    )
    if max_id:
        cursor = await session.get(Notification, max_id)
        if cursor is not None:
            # Mesmo par (created_at, id) da ordenação: empates não somem entre páginas
            query = query.where(
                or_(
                    Notification.created_at < cursor.created_at,
                    and_(
                        Notification.created_at == cursor.created_at,
                        Notification.id < cursor.id,
                    ),
                )
            )
    if types:
        query = query.where(Notification.type.in_(types))
    if exclude_types:
        query = query.where(Notification.type.not_in(exclude_types))
    if only_unread:
        query = query.where(Notification.is_read.is_(False))

    result = await session.execute(query)
    return list(result.scalars().all())


async def unread_count(session: AsyncSession, actor_id: str) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(Notification)
        .where(Notification.actor_id == actor_id, Notification.is_read.is_(False))
    )


def group_notifications(notifications: list[Notification]) -> list[dict]:
    """Agrupa pela group_key mantendo a ordem da primeira ocorrência."""
    groups: dict[str, dict] = {}
    for notification in notifications:
        key = notification.group_key or f"ungrouped:{notification.id}"
        group = groups.setdefault(
            key,
            {
                "group_key": key,
                "type": notification.type,
                "status_id": notification.status_id,
                "notifications": [],
                "source_actor_ids": [],
            },
        )
        group["notifications"].append(notification)
        if notification.source_actor_id not in group["source_actor_ids"]:
            group["source_actor_ids"].append(notification.source_actor_id)
    return list(groups.values())


# ---------------------------------------------------------------------------
# Contagens (sempre agregadas)
# ---------------------------------------------------------------------------

async def like_count(session: AsyncSession, status_id: str) -> int:
    return await session.scalar(
        select(func.count()).select_from(Like).where(Like.status_id == status_id)
    )


async def reblog_count(session: AsyncSession, status_id: str) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(Status)
        .where(Status.original_status_id == status_id, Status.deleted_at.is_(None))
    )


async def follower_count(session: AsyncSession, actor_id: str) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(Follow)
        .where(Follow.target_actor_id == actor_id, Follow.status == FollowStatus.ACCEPTED)
    )


async def following_count(session: AsyncSession, actor_id: str) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(Follow)
        .where(Follow.actor_id == actor_id, Follow.status == FollowStatus.ACCEPTED)
    )


async def status_count(session: AsyncSession, actor_id: str) -> int:
    return await session.scalar(
        select(func.count())
        .select_from(Status)
        .where(
            Status.actor_id == actor_id,
            Status.type != StatusType.ANNOUNCE,
            Status.deleted_at.is_(None),
        )
    )


async def poll_votes(session: AsyncSession, status: Status) -> list[int]:
    """
    Votos por opção, na ordem de `poll_choices`. Enquetes locais agregam as
    arestas de voto; remotas usam os totais do último Update(Question).
    """
    choices = status.poll_choices or []
    if status.poll_totals is not None:
        totals = list(status.poll_totals)[: len(choices)]
        return totals + [0] * (len(choices) - len(totals))

    result = await session.execute(
        select(PollVote.choice, func.count())
        .where(PollVote.status_id == status.id)
        .group_by(PollVote.choice)
    )
    counts = dict(result.all())
    return [counts.get(index, 0) for index in range(len(choices))]


async def poll_voters_count(session: AsyncSession, status_id: str) -> int:
    return await session.scalar(
        select(func.count(func.distinct(PollVote.actor_id))).where(PollVote.status_id == status_id)
    )
