"""
app/services/actions.py

Ações de domínio iniciadas por actors locais (o "outbox").

Toda ação segue o mesmo caminho:
validar → persistir → materializar → resolver inboxes → enfileirar

As três primeiras etapas rodam numa transação sob o lock da chave afetada;
a fila só é alimentada depois do commit. Buscas na rede (menções, actor
alvo de um follow) acontecem antes, fora do lock.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.activitypub import composer
from app.activitypub.discovery import ActorDirectory, resolve_handle
from app.config import settings
from app.database import async_session_factory, utcnow
from app.errors import InvalidActionError, NotFoundError
from app.models.actor import Actor, DeletionStatus
from app.models.follow import Follow, FollowStatus
from app.models.like import Like
from app.models.notification import NotificationType
from app.models.poll_vote import PollVote
from app.models.status import Status, StatusEdit, StatusType, Visibility
from app.services import timeline
from app.services.concurrency import KeyedLock, retrying_transaction
from app.services.identity import WRITE, Identity, require_scope
from app.services.inbound import active_boost, tombstone_status
from app.services.queue import DeliveryQueue
from app.services.resolver import plan_delivery

log = logging.getLogger(__name__)

MAX_POLL_CHOICES = 4


async def _local_actor(session: AsyncSession, actor_id: str) -> Actor:
    actor = await session.get(Actor, actor_id)
    if actor is None or not actor.is_local:
        raise NotFoundError(f"Actor local {actor_id} não encontrado")
    if not actor.is_active:
        raise InvalidActionError(f"Actor {actor_id} está sendo removido")
    return actor


async def _visible_status(session: AsyncSession, status_id: str) -> Status:
    status = await session.get(Status, status_id)
    if status is None or status.is_tombstoned:
        raise NotFoundError(f"Status {status_id} não encontrado")
    return status


def _mentions_of(status: Status, actor: Actor) -> list[str]:
    skip = {*composer.PUBLIC_ALIASES, actor.followers_url, actor.id}
    return [recipient for recipient in status.recipients if recipient not in skip]


class Outbox:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        queue: DeliveryQueue | None = None,
        locks: KeyedLock | None = None,
        directory: ActorDirectory | None = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.queue = queue or DeliveryQueue(self.session_factory)
        self.locks = locks or KeyedLock()
        self.directory = directory or ActorDirectory()

    async def _apply(self, key: str, fn):
        async with self.locks.hold(key):
            result, outgoing = await retrying_transaction(self.session_factory, fn)
        if outgoing:
            await self.queue.dispatch(outgoing)
        return result

    # -----------------------------------------------------------------------
    # Resolução de actors (rede, fora do lock)
    # -----------------------------------------------------------------------

    async def resolve_actor(self, reference: str) -> str:
        """Aceita URI ou handle (`user@domain`); garante o actor no banco e retorna o id."""
        async with self.session_factory() as session:
            if not reference.startswith("http"):
                username, _, domain = reference.lstrip("@").partition("@")
                if not domain or domain == settings.domain:
                    local = await session.scalar(
                        select(Actor).where(
                            Actor.username == username, Actor.domain == settings.domain
                        )
                    )
                    if local is None:
                        raise NotFoundError(f"Actor {reference} não encontrado")
                    return local.id
                reference = await resolve_handle(reference)

            async with session.begin():
                actor = await self.directory.get_actor(session, reference)
                return actor.id

    async def resolve_mentions(self, mentions) -> list[str]:
        return list(dict.fromkeys([await self.resolve_actor(m) for m in mentions or []]))

    # -----------------------------------------------------------------------
    # Statuses
    # -----------------------------------------------------------------------

    async def publish_note(
        self,
        identity: Identity,
        content: str,
        visibility: str | None = None,
        summary: str | None = None,
        in_reply_to: str | None = None,
        mentions: list[str] | None = None,
        poll_choices: list[str] | None = None,
        poll_multiple: bool = False,
        poll_ends_at: datetime | None = None,
    ) -> Status:
        require_scope(identity, f"{WRITE}:statuses")
        if not content and not poll_choices:
            raise InvalidActionError("Status sem conteúdo")
        if poll_choices is not None and not 2 <= len(poll_choices) <= MAX_POLL_CHOICES:
            raise InvalidActionError(
                f"Enquete precisa de 2 a {MAX_POLL_CHOICES} opções"
            )
        if visibility is not None and visibility not in Visibility.ALL:
            raise InvalidActionError(f"Visibilidade desconhecida: {visibility!r}")

        mention_ids = await self.resolve_mentions(mentions)

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            reply_to = await _visible_status(session, in_reply_to) if in_reply_to else None
            chosen = visibility or actor.default_visibility

            now = utcnow()
            status = Status(
                id=composer.new_status_id(actor),
                actor_id=actor.id,
                type=StatusType.QUESTION if poll_choices else StatusType.NOTE,
                content=content,
                summary=summary,
                visibility=chosen,
                to=composer.recipients_to(actor, mention_ids, reply_to, chosen),
                cc=composer.recipients_cc(actor, mention_ids, chosen),
                reply_id=reply_to.id if reply_to else None,
                poll_choices=list(poll_choices) if poll_choices else None,
                poll_multiple=bool(poll_choices) and poll_multiple,
                poll_ends_at=poll_ends_at if poll_choices else None,
                created_at=now,
                updated_at=now,
            )
            session.add(status)
            await session.flush()

            await timeline.add_status_to_timelines(session, status)
            await timeline.notify_for_status(session, status, mention_ids)

            activity = composer.create_activity(actor, status, mention_ids)
            return status, [await plan_delivery(session, actor, activity, status.id)]

        status = await self._apply(f"actor:{identity.actor_id}", fn)
        log.info(f"Status {status.id} publicado por {identity.actor_id}")
        return status

    async def update_note(
        self,
        identity: Identity,
        status_id: str,
        content: str,
        summary: str | None = None,
        poll_choices: list[str] | None = None,
    ) -> Status:
        require_scope(identity, f"{WRITE}:statuses")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            status = await _visible_status(session, status_id)
            if status.actor_id != actor.id:
                raise NotFoundError(f"Status {status_id} não encontrado")
            if status.type == StatusType.ANNOUNCE:
                raise InvalidActionError("Announce não pode ser editado")
            if poll_choices is not None and status.type != StatusType.QUESTION:
                raise InvalidActionError("Só enquetes têm opções")

            session.add(
                StatusEdit(
                    status_id=status.id,
                    content=status.content,
                    summary=status.summary,
                    poll_choices=status.poll_choices,
                    version=status.version,
                )
            )
            status.content = content
            status.summary = summary
            if poll_choices is not None and list(poll_choices) != status.poll_choices:
                # Opções novas invalidam os votos já dados
                status.poll_choices = list(poll_choices)
                await session.execute(
                    delete(PollVote)
                    .where(PollVote.status_id == status.id)
                    .execution_options(synchronize_session=False)
                )
            status.updated_at = utcnow()
            await session.flush()

            votes = await timeline.poll_votes(session, status) if status.poll_choices else None
            activity = composer.update_activity(actor, status, _mentions_of(status, actor), votes)
            return status, [await plan_delivery(session, actor, activity, status.id)]

        return await self._apply(f"status:{status_id}", fn)

    async def status_history(self, status_id: str) -> list[StatusEdit]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StatusEdit)
                .where(StatusEdit.status_id == status_id)
                .order_by(StatusEdit.version)
            )
            return list(result.scalars().all())

    async def delete_status(self, identity: Identity, status_id: str) -> bool:
        """Apaga (tombstone) um status próprio. Repetir é no-op e retorna False."""
        require_scope(identity, f"{WRITE}:statuses")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            status = await session.get(Status, status_id)
            if status is None or status.actor_id != actor.id:
                raise NotFoundError(f"Status {status_id} não encontrado")
            if status.is_tombstoned:
                return False, []
            if status.type == StatusType.ANNOUNCE:
                raise InvalidActionError("Use unboost para desfazer um Announce")

            # Destinos calculados antes do tombstone, com os followers atuais
            activity = composer.delete_activity(actor, status)
            outgoing = await plan_delivery(session, actor, activity, status.id)
            await tombstone_status(session, status)
            return True, [outgoing]

        return await self._apply(f"status:{status_id}", fn)

    # -----------------------------------------------------------------------
    # Boost
    # -----------------------------------------------------------------------

    async def boost(self, identity: Identity, status_id: str) -> Status:
        require_scope(identity, f"{WRITE}:statuses")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            original = await _visible_status(session, status_id)
            if original.type == StatusType.ANNOUNCE:
                original = await _visible_status(session, original.original_status_id)
            if original.visibility in (Visibility.PRIVATE, Visibility.DIRECT):
                raise InvalidActionError("Status privado não pode ser compartilhado")

            existing = await active_boost(session, actor.id, original.id)
            if existing is not None:
                return existing, []

            announce = Status(
                id=composer.new_status_id(actor),
                actor_id=actor.id,
                type=StatusType.ANNOUNCE,
                visibility=Visibility.PUBLIC,
                to=[composer.PUBLIC],
                cc=[original.actor_id, actor.followers_url],
                original_status_id=original.id,
                created_at=utcnow(),
            )
            session.add(announce)
            await session.flush()

            await timeline.add_status_to_timelines(session, announce)
            await timeline.create_notification(
                session,
                actor_id=original.actor_id,
                type=NotificationType.REBLOG,
                source_actor_id=actor.id,
                status_id=original.id,
                group_key=f"reblog:{original.id}",
            )
            activity = composer.announce_activity(actor, announce, original)
            return announce, [await plan_delivery(session, actor, activity, announce.id)]

        return await self._apply(f"announce:{identity.actor_id}|{status_id}", fn)

    async def unboost(self, identity: Identity, status_id: str) -> bool:
        require_scope(identity, f"{WRITE}:statuses")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            announce = await active_boost(session, actor.id, status_id)
            if announce is None:
                return False, []
            original = await session.get(Status, status_id)

            undo = composer.undo_activity(
                actor, composer.announce_activity(actor, announce, original)
            )
            await tombstone_status(session, announce)
            await timeline.delete_notifications(
                session,
                status_id=status_id,
                source_actor_id=actor.id,
                type=NotificationType.REBLOG,
            )
            # Undo não é cancelável pelo tombstone: segue sem status_id
            return True, [await plan_delivery(session, actor, undo)]

        return await self._apply(f"announce:{identity.actor_id}|{status_id}", fn)

    # -----------------------------------------------------------------------
    # Like
    # -----------------------------------------------------------------------

    async def like(self, identity: Identity, status_id: str) -> Like:
        require_scope(identity, f"{WRITE}:favourites")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            status = await _visible_status(session, status_id)
            existing = await session.scalar(
                select(Like).where(Like.actor_id == actor.id, Like.status_id == status.id)
            )
            if existing is not None:
                return existing, []

            activity = composer.like_activity(actor, status)
            like = Like(actor_id=actor.id, status_id=status.id, activity_id=activity["id"])
            session.add(like)
            await session.flush()
            await timeline.create_notification(
                session,
                actor_id=status.actor_id,
                type=NotificationType.LIKE,
                source_actor_id=actor.id,
                status_id=status.id,
                group_key=f"like:{status.id}",
            )
            return like, [await plan_delivery(session, actor, activity)]

        return await self._apply(f"like:{identity.actor_id}|{status_id}", fn)

    async def unlike(self, identity: Identity, status_id: str) -> bool:
        require_scope(identity, f"{WRITE}:favourites")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            like = await session.scalar(
                select(Like).where(Like.actor_id == actor.id, Like.status_id == status_id)
            )
            if like is None:
                return False, []
            status = await session.get(Status, status_id)

            original = {
                "id": like.activity_id or f"{actor.id}#likes/{uuid.uuid4()}",
                "type": "Like",
                "actor": actor.id,
                "object": status_id,
                "to": [status.actor_id] if status else [],
            }
            undo = composer.undo_activity(actor, original)
            await timeline.delete_notifications(
                session,
                status_id=status_id,
                source_actor_id=actor.id,
                type=NotificationType.LIKE,
            )
            await session.delete(like)
            await session.flush()
            return True, [await plan_delivery(session, actor, undo)]

        return await self._apply(f"like:{identity.actor_id}|{status_id}", fn)

    # -----------------------------------------------------------------------
    # Follow
    # -----------------------------------------------------------------------

    async def follow(self, identity: Identity, target: str) -> Follow:
        require_scope(identity, f"{WRITE}:follows")
        target_id = await self.resolve_actor(target)
        if target_id == identity.actor_id:
            raise InvalidActionError("Não é possível seguir a si mesmo")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            target_actor = await session.get(Actor, target_id)
            if target_actor is None or not target_actor.is_active:
                raise NotFoundError(f"Actor {target_id} não encontrado")

            follow = await session.scalar(
                select(Follow).where(
                    Follow.actor_id == actor.id,
                    Follow.target_actor_id == target_actor.id,
                    Follow.status != FollowStatus.UNDO,
                )
            )
            if follow is not None and follow.status != FollowStatus.REJECTED:
                return follow, []

            if follow is None:
                follow = Follow(actor_id=actor.id, target_actor_id=target_actor.id)
                session.add(follow)
            follow.activity_id = f"{actor.id}#follows/{uuid.uuid4()}"

            if target_actor.is_local:
                # Entre actors locais não há ida e volta pela rede
                follow.status = (
                    FollowStatus.REQUESTED
                    if target_actor.manually_approves_followers
                    else FollowStatus.ACCEPTED
                )
                await session.flush()
                await timeline.create_notification(
                    session,
                    actor_id=target_actor.id,
                    type=(
                        NotificationType.FOLLOW
                        if follow.status == FollowStatus.ACCEPTED
                        else NotificationType.FOLLOW_REQUEST
                    ),
                    source_actor_id=actor.id,
                    follow_id=follow.id,
                )
                return follow, []

            follow.status = FollowStatus.REQUESTED
            await session.flush()
            activity = composer.follow_activity(actor, target_actor, follow)
            return follow, [await plan_delivery(session, actor, activity)]

        return await self._apply(f"follow:{identity.actor_id}|{target_id}", fn)

    async def unfollow(self, identity: Identity, target_id: str) -> bool:
        require_scope(identity, f"{WRITE}:follows")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            follow = await session.scalar(
                select(Follow).where(
                    Follow.actor_id == actor.id,
                    Follow.target_actor_id == target_id,
                    Follow.status != FollowStatus.UNDO,
                )
            )
            if follow is None:
                return False, []

            target_actor = await session.get(Actor, target_id)
            follow.status = FollowStatus.UNDO
            await session.flush()
            await timeline.delete_notifications(session, follow_id=follow.id)

            if target_actor is None or target_actor.is_local:
                return True, []
            undo = composer.undo_activity(
                actor, composer.follow_activity(actor, target_actor, follow)
            )
            return True, [await plan_delivery(session, actor, undo)]

        return await self._apply(f"follow:{identity.actor_id}|{target_id}", fn)

    async def accept_follow_request(self, identity: Identity, follower_id: str) -> Follow:
        return await self._answer_follow_request(identity, follower_id, FollowStatus.ACCEPTED)

    async def reject_follow_request(self, identity: Identity, follower_id: str) -> Follow:
        return await self._answer_follow_request(identity, follower_id, FollowStatus.REJECTED)

    async def _answer_follow_request(self, identity: Identity, follower_id: str, answer: str) -> Follow:
        require_scope(identity, f"{WRITE}:follows")

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            follow = await session.scalar(
                select(Follow).where(
                    Follow.actor_id == follower_id,
                    Follow.target_actor_id == actor.id,
                    Follow.status == FollowStatus.REQUESTED,
                )
            )
            if follow is None:
                raise NotFoundError(f"Pedido de {follower_id} não encontrado")

            follow.status = answer
            await session.flush()
            await timeline.delete_notifications(
                session, follow_id=follow.id, type=NotificationType.FOLLOW_REQUEST
            )
            if answer == FollowStatus.ACCEPTED:
                await timeline.create_notification(
                    session,
                    actor_id=actor.id,
                    type=NotificationType.FOLLOW,
                    source_actor_id=follower_id,
                    follow_id=follow.id,
                )

            follower = await session.get(Actor, follower_id)
            if follower is None or follower.is_local:
                return follow, []
            build = composer.accept_activity if answer == FollowStatus.ACCEPTED else composer.reject_activity
            return follow, [await plan_delivery(session, actor, build(actor, follow))]

        return await self._apply(f"follow:{follower_id}|{identity.actor_id}", fn)

    # -----------------------------------------------------------------------
    # Remoção de conta
    # -----------------------------------------------------------------------

    async def schedule_actor_deletion(self, identity: Identity) -> Actor:
        require_scope(identity, WRITE)

        async def fn(session: AsyncSession):
            actor = await _local_actor(session, identity.actor_id)
            actor.advance_deletion(DeletionStatus.SCHEDULED)
            await session.flush()
            return actor, []

        actor = await self._apply(f"actor:{identity.actor_id}", fn)
        log.info(f"Remoção de {actor.id} agendada")
        return actor

    async def delete_actor(self, actor_id: str) -> Actor:
        """
        Executa uma remoção agendada: avisa followers e seguidos com um Delete
        do actor, apaga os statuses e desfaz os follows. Chamado pelo operador.
        """

        async def fn(session: AsyncSession):
            actor = await session.get(Actor, actor_id)
            if actor is None or not actor.is_local:
                raise NotFoundError(f"Actor local {actor_id} não encontrado")
            if actor.deletion_status == DeletionStatus.REMOVED:
                return actor, []
            if actor.deletion_status == DeletionStatus.NONE:
                raise InvalidActionError(f"Remoção de {actor_id} não foi agendada")
            actor.advance_deletion(DeletionStatus.DELETING)

            activity = composer.delete_actor_activity(actor)
            outgoing = await plan_delivery(session, actor, activity)
            following = await session.execute(
                select(Actor)
                .join(Follow, Follow.target_actor_id == Actor.id)
                .where(Follow.actor_id == actor.id, Follow.status == FollowStatus.ACCEPTED)
            )
            extra = {
                target.delivery_inbox
                for target in following.scalars().all()
                if not target.is_local and target.is_active
            }
            outgoing.inboxes = sorted(set(outgoing.inboxes) | extra)

            statuses = await session.execute(
                select(Status).where(Status.actor_id == actor.id, Status.deleted_at.is_(None))
            )
            for status in statuses.scalars().all():
                await tombstone_status(session, status)

            follows = await session.execute(
                select(Follow).where(
                    (Follow.actor_id == actor.id) | (Follow.target_actor_id == actor.id),
                    Follow.status != FollowStatus.UNDO,
                )
            )
            for follow in follows.scalars().all():
                follow.status = FollowStatus.UNDO

            await timeline.clear_notifications(session, actor.id)
            actor.advance_deletion(DeletionStatus.REMOVED)
            await session.flush()
            return actor, [outgoing]

        actor = await self._apply(f"actor:{actor_id}", fn)
        log.info(f"Actor {actor_id} removido")
        return actor
