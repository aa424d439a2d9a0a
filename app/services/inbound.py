"""
app/services/inbound.py

Processa atividades recebidas na inbox (pessoal ou compartilhada).

Fluxo de `InboxProcessor.receive()`:
1. Decodifica o JSON (400 se inválido)
2. Verifica a assinatura HTTP (apsig) com a chave do `actor` declarado na
   atividade; se falhar com chave em cache, busca o actor de novo uma vez
   (rotação). O keyId precisa pertencer a esse actor
3. Valida a atividade (união etiquetada em schema.py) e exige que o
   signatário seja o próprio `actor` da atividade
4. Aplica a máquina de estados do tipo, serializada por chave e dentro de
   uma transação com compare-and-set
5. Enfileira as respostas (ex: Accept) só depois do commit

Referências a objetos desconhecidos são aceitas como no-op, exceto o
original de um Announce, que é buscado antes de aplicar o boost. Um Note
com `name`, sem conteúdo e em resposta a uma enquete local é um voto.
"""

import json
import logging
from datetime import datetime, timezone
from urllib.parse import urlsplit

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.activitypub import composer
from app.activitypub.discovery import ActorDirectory
from app.activitypub.schema import (
    NOTE_TYPES,
    AcceptActivity,
    AnnounceActivity,
    CreateActivity,
    DeleteActivity,
    FollowActivity,
    LikeActivity,
    RejectActivity,
    UndoActivity,
    UnknownActivity,
    UpdateActivity,
    object_id,
    parse_activity,
    parse_note,
)
from app.activitypub.signature import has_signature, key_owner, verify_request
from app.config import settings
from app.database import as_utc, async_session_factory, utcnow
from app.errors import AuthorizationError, FederationError, ValidationError
from app.models.actor import Actor, DeletionStatus
from app.models.follow import Follow, FollowStatus
from app.models.like import Like
from app.models.notification import NotificationType
from app.models.poll_vote import PollVote
from app.models.status import Status, StatusEdit, StatusType
from app.services import timeline
from app.services.concurrency import KeyedLock, retrying_transaction
from app.services.queue import DeliveryQueue
from app.services.resolver import plan_delivery

log = logging.getLogger(__name__)

APPLIED = "applied"
IGNORED = "ignored"


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class InboxProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        directory: ActorDirectory | None = None,
        locks: KeyedLock | None = None,
        queue: DeliveryQueue | None = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.directory = directory or ActorDirectory()
        self.locks = locks or KeyedLock()
        self.queue = queue or DeliveryQueue(self.session_factory)
        self._handlers = {
            "Create": self.on_create,
            "Update": self.on_update,
            "Delete": self.on_delete,
            "Follow": self.on_follow,
            "Accept": self.on_accept,
            "Reject": self.on_reject,
            "Like": self.on_like,
            "Announce": self.on_announce,
            "Undo": self.on_undo,
        }

    # -----------------------------------------------------------------------
    # Entrada
    # -----------------------------------------------------------------------

    async def receive(self, method: str, path: str, headers, body: bytes) -> str:
        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Corpo da requisição não é JSON válido") from e
        if not isinstance(payload, dict):
            raise ValidationError("Atividade precisa ser um objeto JSON")

        signer = await self.authenticate(method, path, headers, body, object_id(payload.get("actor")))

        activity = parse_activity(payload)
        if activity.actor != signer:
            raise AuthorizationError(
                f"Atividade de {activity.actor} assinada por {signer}"
            )
        if isinstance(activity, UnknownActivity):
            raise ValidationError(f"Tipo de atividade não suportado: {activity.type!r}")

        log.info(f"{activity.type} recebido de {activity.actor}")
        return await self._handlers[activity.type](activity)

    async def authenticate(
        self, method: str, path: str, headers, body: bytes, actor_id: str | None
    ) -> str:
        """
        Verifica a assinatura com a chave do actor que a atividade declara e
        retorna o id dele. O keyId verificado precisa pertencer a esse actor.
        """
        if not has_signature(headers):
            raise AuthorizationError("Requisição sem assinatura")
        if not actor_id:
            raise AuthorizationError("Atividade sem actor para verificar a assinatura")

        async with self.session_factory() as session:
            async with session.begin():
                actor = await self._signer(session, actor_id)
                try:
                    key_id = verify_request(method, path, headers, body, actor.public_key_pem)
                except AuthorizationError:
                    if actor.is_local:
                        raise
                    log.info(f"Assinatura de {actor_id} não confere, buscando a chave de novo")
                    actor = await self._signer(session, actor_id, refresh=True)
                    key_id = verify_request(method, path, headers, body, actor.public_key_pem)

        if key_owner(key_id) != actor.id:
            raise AuthorizationError(f"Chave {key_id} não pertence a {actor.id}")
        return actor.id

    async def _signer(self, session: AsyncSession, actor_id: str, refresh: bool = False) -> Actor:
        try:
            return await self.directory.get_actor(session, actor_id, refresh=refresh)
        except FederationError as e:
            raise AuthorizationError(f"Não foi possível obter a chave de {actor_id}: {e}") from e
        except Exception as e:
            log.warning(f"Falha ao buscar o actor {actor_id}: {e}")
            raise AuthorizationError(f"Não foi possível obter a chave de {actor_id}") from e

    async def _apply(self, key: str, fn) -> str:
        """Executa a mutação sob o lock da chave; enfileira as respostas após o commit."""
        async with self.locks.hold(key):
            outcome, outgoing = await retrying_transaction(self.session_factory, fn)
        if outgoing:
            await self.queue.dispatch(outgoing)
        return outcome

    async def _lookup(self, query):
        """Leitura avulsa fora do lock, para descobrir a chave de serialização."""
        async with self.session_factory() as session:
            return await session.scalar(query.limit(1))

    # -----------------------------------------------------------------------
    # Create / Update
    # -----------------------------------------------------------------------

    async def on_create(self, activity: CreateActivity) -> str:
        return await self._upsert_status(activity, is_update=False)

    async def on_update(self, activity: UpdateActivity) -> str:
        if activity.object.get("type") not in NOTE_TYPES:
            # Update de perfil: só invalida o cache para a próxima busca
            if object_id(activity.object) == activity.actor:
                self.directory.cache.invalidate(activity.actor)
            return IGNORED
        return await self._upsert_status(activity, is_update=True)

    async def _upsert_status(self, activity, is_update: bool) -> str:
        if activity.object.get("type") not in NOTE_TYPES:
            return IGNORED
        note = parse_note(activity.object)
        if note.attributed_to != activity.actor:
            raise AuthorizationError(
                f"{activity.actor} não é o autor de {note.id}"
            )
        # Voto em enquete local vira aresta, não status
        if note.is_vote and await self._is_local_poll(note.in_reply_to):
            if is_update:
                return IGNORED
            return await self._record_vote(activity.actor, note)

        async def fn(session: AsyncSession):
            status = await session.get(Status, note.id)

            if status is None:
                status = await store_note(session, note)
                await timeline.add_status_to_timelines(session, status)
                await timeline.notify_for_status(session, status, note.mentions)
                return APPLIED, []

            if status.actor_id != activity.actor:
                raise AuthorizationError(f"{activity.actor} não é o autor de {note.id}")
            if status.is_tombstoned or not is_update:
                return IGNORED, []

            # Update(Question) só com totais novos: não é edição
            if status.type == StatusType.QUESTION and _same_text(status, note):
                if note.poll_totals is None or note.poll_totals == status.poll_totals:
                    return IGNORED, []
                status.poll_totals = note.poll_totals
                await session.flush()
                log.info(f"Totais da enquete {note.id} atualizados: {note.poll_totals}")
                return APPLIED, []

            # Edições fora de ordem: só aplica se for mais nova que a atual
            updated = parse_timestamp(note.updated)
            current = as_utc(status.updated_at)
            if updated is not None and current is not None and updated <= current:
                log.info(f"Update antigo de {note.id} descartado")
                return IGNORED, []

            session.add(
                StatusEdit(
                    status_id=status.id,
                    content=status.content,
                    summary=status.summary,
                    poll_choices=status.poll_choices,
                    version=status.version,
                )
            )
            status.content = note.content
            status.summary = note.summary
            if note.poll_choices is not None:
                status.poll_choices = note.poll_choices
                status.poll_multiple = note.poll_multiple
                status.poll_totals = note.poll_totals
                status.poll_ends_at = parse_timestamp(note.end_time) or status.poll_ends_at
            status.updated_at = updated or utcnow()
            await session.flush()
            return APPLIED, []

        return await self._apply(f"status:{note.id}", fn)

    async def _is_local_poll(self, status_id: str) -> bool:
        found = await self._lookup(
            select(Status.id)
            .join(Actor, Actor.id == Status.actor_id)
            .where(
                Status.id == status_id,
                Status.type == StatusType.QUESTION,
                Actor.private_key_pem.is_not(None),
            )
        )
        return found is not None

    async def _record_vote(self, actor_id: str, note) -> str:
        """
        Registra o voto de `actor_id` na opção `note.name`. Enquete encerrada,
        opção inexistente ou voto repetido são no-op; em oneOf cada actor
        vota uma única vez.
        """
        poll_id = note.in_reply_to

        async def fn(session: AsyncSession):
            poll = await session.get(Status, poll_id)
            if poll is None or poll.is_tombstoned or poll.poll_closed:
                return IGNORED, []
            choices = poll.poll_choices or []
            if note.name not in choices:
                log.info(f"Voto de {actor_id} em opção inexistente de {poll_id}: {note.name!r}")
                return IGNORED, []
            choice = choices.index(note.name)

            result = await session.execute(
                select(PollVote.choice).where(
                    PollVote.actor_id == actor_id, PollVote.status_id == poll_id
                )
            )
            voted = set(result.scalars().all())
            if choice in voted or (voted and not poll.poll_multiple):
                return IGNORED, []

            session.add(
                PollVote(actor_id=actor_id, status_id=poll_id, choice=choice, activity_id=note.id)
            )
            await session.flush()
            log.info(f"Voto de {actor_id} em {poll_id}: {note.name!r}")
            return APPLIED, []

        return await self._apply(f"vote:{actor_id}|{poll_id}", fn)

    # -----------------------------------------------------------------------
    # Delete
    # -----------------------------------------------------------------------

    async def on_delete(self, activity: DeleteActivity) -> str:
        target = object_id(activity.object)
        if not target:
            raise ValidationError("Delete sem objeto")
        if target == activity.actor:
            return await self._delete_actor(activity.actor)

        async def fn(session: AsyncSession):
            status = await session.get(Status, target)
            if status is None or status.is_tombstoned:
                return IGNORED, []
            if status.actor_id != activity.actor:
                raise AuthorizationError(f"{activity.actor} não pode apagar {target}")
            await tombstone_status(session, status)
            return APPLIED, []

        return await self._apply(f"status:{target}", fn)

    async def _delete_actor(self, actor_id: str) -> str:
        self.directory.cache.invalidate(actor_id)

        async def fn(session: AsyncSession):
            actor = await session.get(Actor, actor_id)
            if actor is None or actor.is_local:
                return IGNORED, []
            if actor.deletion_status == DeletionStatus.REMOVED:
                return IGNORED, []

            result = await session.execute(
                select(Status).where(Status.actor_id == actor_id, Status.deleted_at.is_(None))
            )
            for status in result.scalars().all():
                await tombstone_status(session, status)

            await session.execute(
                update(Follow)
                .where(
                    or_(Follow.actor_id == actor_id, Follow.target_actor_id == actor_id),
                    Follow.status != FollowStatus.UNDO,
                )
                .values(status=FollowStatus.UNDO, version=Follow.version + 1)
                .execution_options(synchronize_session=False)
            )
            actor.advance_deletion(DeletionStatus.REMOVED)
            log.info(f"Actor remoto {actor_id} removido")
            return APPLIED, []

        return await self._apply(f"actor:{actor_id}", fn)

    # -----------------------------------------------------------------------
    # Follow / Accept / Reject
    # -----------------------------------------------------------------------

    async def on_follow(self, activity: FollowActivity) -> str:
        target_id = object_id(activity.object)
        if not target_id:
            raise ValidationError("Follow sem objeto")

        async def fn(session: AsyncSession):
            target = await session.get(Actor, target_id)
            if target is None or not target.is_local or not target.is_active:
                return IGNORED, []

            follow = await session.scalar(
                select(Follow).where(
                    Follow.actor_id == activity.actor,
                    Follow.target_actor_id == target_id,
                    Follow.status != FollowStatus.UNDO,
                )
            )
            wanted = (
                FollowStatus.REQUESTED
                if target.manually_approves_followers
                else FollowStatus.ACCEPTED
            )
            if follow is None:
                follow = Follow(
                    actor_id=activity.actor,
                    target_actor_id=target_id,
                    status=wanted,
                    activity_id=activity.id,
                )
                session.add(follow)
            elif follow.status == FollowStatus.ACCEPTED:
                # Follow repetido: o remoto pode não ter recebido o Accept
                follow.activity_id = activity.id
            else:
                follow.activity_id = activity.id
                follow.status = wanted
            await session.flush()

            await timeline.create_notification(
                session,
                actor_id=target_id,
                type=(
                    NotificationType.FOLLOW
                    if follow.status == FollowStatus.ACCEPTED
                    else NotificationType.FOLLOW_REQUEST
                ),
                source_actor_id=activity.actor,
                follow_id=follow.id,
            )

            outgoing = []
            if follow.status == FollowStatus.ACCEPTED:
                accept = composer.accept_activity(target, follow)
                outgoing.append(await plan_delivery(session, target, accept))
            return APPLIED, outgoing

        return await self._apply(f"follow:{activity.actor}|{target_id}", fn)

    async def on_accept(self, activity: AcceptActivity) -> str:
        return await self._answer_follow(activity, FollowStatus.ACCEPTED)

    async def on_reject(self, activity: RejectActivity) -> str:
        return await self._answer_follow(activity, FollowStatus.REJECTED)

    async def _answer_follow(self, activity, new_status: str) -> str:
        reference = activity.object
        follow_activity_id = object_id(reference)
        follower_id = reference.get("actor") if isinstance(reference, dict) else None
        if isinstance(follower_id, dict):
            follower_id = follower_id.get("id")

        async def fn(session: AsyncSession):
            follow = None
            if follow_activity_id:
                follow = await session.scalar(
                    select(Follow).where(
                        Follow.activity_id == follow_activity_id,
                        Follow.target_actor_id == activity.actor,
                        Follow.status == FollowStatus.REQUESTED,
                    )
                )
            if follow is None and follower_id:
                follow = await session.scalar(
                    select(Follow).where(
                        Follow.actor_id == follower_id,
                        Follow.target_actor_id == activity.actor,
                        Follow.status == FollowStatus.REQUESTED,
                    )
                )
            # Sem aresta pendente: replay ou entrega fora de ordem
            if follow is None:
                return IGNORED, []
            follow.status = new_status
            await session.flush()
            log.info(f"Follow {follow.actor_id} → {follow.target_actor_id}: {new_status}")
            return APPLIED, []

        return await self._apply(f"follow-answer:{activity.actor}", fn)

    # -----------------------------------------------------------------------
    # Like / Announce
    # -----------------------------------------------------------------------

    async def on_like(self, activity: LikeActivity) -> str:
        status_id = object_id(activity.object)
        if not status_id:
            raise ValidationError("Like sem objeto")

        async def fn(session: AsyncSession):
            status = await session.get(Status, status_id)
            if status is None or status.is_tombstoned:
                return IGNORED, []
            existing = await session.scalar(
                select(Like).where(Like.actor_id == activity.actor, Like.status_id == status_id)
            )
            if existing is not None:
                return IGNORED, []
            session.add(Like(actor_id=activity.actor, status_id=status_id, activity_id=activity.id))
            await session.flush()
            await timeline.create_notification(
                session,
                actor_id=status.actor_id,
                type=NotificationType.LIKE,
                source_actor_id=activity.actor,
                status_id=status_id,
                group_key=f"like:{status_id}",
            )
            return APPLIED, []

        return await self._apply(f"like:{activity.actor}|{status_id}", fn)

    async def on_announce(self, activity: AnnounceActivity) -> str:
        original_id = object_id(activity.object)
        if not original_id:
            raise ValidationError("Announce sem objeto")
        if await self._lookup(select(Status.id).where(Status.id == original_id)) is None:
            await self._import_status(original_id)

        async def fn(session: AsyncSession):
            original = await session.get(Status, original_id)
            if original is None or original.is_tombstoned:
                return IGNORED, []
            if original.type == StatusType.ANNOUNCE:
                return IGNORED, []
            if await session.get(Status, activity.id) is not None:
                return IGNORED, []
            existing = await active_boost(session, activity.actor, original_id)
            if existing is not None:
                return IGNORED, []

            author = await session.get(Actor, activity.actor)
            announce = Status(
                id=activity.id,
                actor_id=activity.actor,
                type=StatusType.ANNOUNCE,
                visibility=composer.visibility_from_addressing(
                    activity.to, activity.cc, author.followers_url if author else None
                ),
                to=activity.to,
                cc=activity.cc,
                original_status_id=original_id,
                created_at=parse_timestamp(getattr(activity, "published", None)) or utcnow(),
            )
            session.add(announce)
            await session.flush()
            await timeline.add_status_to_timelines(session, announce)
            await timeline.create_notification(
                session,
                actor_id=original.actor_id,
                type=NotificationType.REBLOG,
                source_actor_id=activity.actor,
                status_id=original_id,
                group_key=f"reblog:{original_id}",
            )
            return APPLIED, []

        return await self._apply(f"announce:{activity.actor}|{original_id}", fn)

    async def _import_status(self, status_id: str) -> None:
        """
        Busca um status remoto desconhecido (o original de um Announce) e o
        guarda sem materializar timelines. A rede fica fora de qualquer lock;
        falhas deixam o Announce como no-op.
        """
        if urlsplit(status_id).netloc == settings.domain:
            return
        try:
            document = await self.directory.fetch_object(status_id)
            if document.get("type") not in NOTE_TYPES:
                return
            note = parse_note(document)
        except FederationError as e:
            log.info(f"Original {status_id} indisponível: {e}")
            return

        # O documento precisa ser o objeto pedido, de um autor do mesmo host
        if note.id != status_id or urlsplit(note.attributed_to).netloc != urlsplit(status_id).netloc:
            log.warning(f"Documento buscado em {status_id} não corresponde ao objeto")
            return
        if not any(item in composer.PUBLIC_ALIASES for item in [*note.to, *note.cc]):
            log.info(f"Original {status_id} não é público, Announce ignorado")
            return

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self.directory.get_actor(session, note.attributed_to)
        except FederationError as e:
            log.info(f"Autor de {status_id} indisponível: {e}")
            return

        async def fn(session: AsyncSession):
            if await session.get(Status, note.id) is not None:
                return IGNORED, []
            await store_note(session, note)
            return APPLIED, []

        await self._apply(f"status:{note.id}", fn)

    # -----------------------------------------------------------------------
    # Undo
    # -----------------------------------------------------------------------

    async def on_undo(self, activity: UndoActivity) -> str:
        inner = activity.object
        inner_id = object_id(inner)
        if isinstance(inner, dict):
            inner_actor = object_id(inner.get("actor"))
            if inner_actor and inner_actor != activity.actor:
                raise AuthorizationError(f"{activity.actor} não pode desfazer atividade de {inner_actor}")
            inner_type = inner.get("type")
            inner_object = object_id(inner.get("object"))
        else:
            inner_type = None
            inner_object = None

        if inner_type == "Follow" or (inner_type is None and inner_id):
            outcome = await self._undo_follow(activity.actor, inner_id, inner_object)
            if outcome == APPLIED or inner_type == "Follow":
                return outcome
        if inner_type == "Like" or inner_type is None:
            outcome = await self._undo_like(activity.actor, inner_id, inner_object)
            if outcome == APPLIED or inner_type == "Like":
                return outcome
        if inner_type == "Announce" or inner_type is None:
            return await self._undo_announce(activity.actor, inner_id, inner_object)
        return IGNORED

    async def _undo_follow(self, actor_id: str, activity_id: str | None, target_id: str | None) -> str:
        # Mesma chave do on_follow: o alvo, nunca o id da atividade
        if not target_id and activity_id:
            target_id = await self._lookup(
                select(Follow.target_actor_id).where(
                    Follow.actor_id == actor_id, Follow.activity_id == activity_id
                )
            )
        if not target_id:
            return IGNORED

        async def fn(session: AsyncSession):
            follow = await session.scalar(
                select(Follow).where(
                    Follow.actor_id == actor_id,
                    Follow.target_actor_id == target_id,
                    Follow.status != FollowStatus.UNDO,
                )
            )
            if follow is None:
                return IGNORED, []
            follow.status = FollowStatus.UNDO
            await session.flush()
            await timeline.delete_notifications(session, follow_id=follow.id)
            return APPLIED, []

        return await self._apply(f"follow:{actor_id}|{target_id}", fn)

    async def _undo_like(self, actor_id: str, activity_id: str | None, status_id: str | None) -> str:
        if not status_id and activity_id:
            status_id = await self._lookup(
                select(Like.status_id).where(Like.actor_id == actor_id, Like.activity_id == activity_id)
            )
        if not status_id:
            return IGNORED

        async def fn(session: AsyncSession):
            like = await session.scalar(
                select(Like).where(Like.actor_id == actor_id, Like.status_id == status_id)
            )
            if like is None:
                return IGNORED, []
            await timeline.delete_notifications(
                session,
                status_id=like.status_id,
                source_actor_id=actor_id,
                type=NotificationType.LIKE,
            )
            await session.delete(like)
            await session.flush()
            return APPLIED, []

        return await self._apply(f"like:{actor_id}|{status_id}", fn)

    async def _undo_announce(self, actor_id: str, activity_id: str | None, original_id: str | None) -> str:
        if not original_id and activity_id:
            original_id = await self._lookup(
                select(Status.original_status_id).where(
                    Status.id == activity_id,
                    Status.actor_id == actor_id,
                    Status.type == StatusType.ANNOUNCE,
                )
            )
        if not original_id:
            return IGNORED

        async def fn(session: AsyncSession):
            announce = await active_boost(session, actor_id, original_id)
            if announce is None:
                return IGNORED, []
            await tombstone_status(session, announce)
            await timeline.delete_notifications(
                session,
                status_id=announce.original_status_id,
                source_actor_id=actor_id,
                type=NotificationType.REBLOG,
            )
            return APPLIED, []

        return await self._apply(f"announce:{actor_id}|{original_id}", fn)


# ---------------------------------------------------------------------------
# Helpers compartilhados com services/actions.py
# ---------------------------------------------------------------------------

async def active_boost(session: AsyncSession, actor_id: str, original_id: str) -> Status | None:
    return await session.scalar(
        select(Status).where(
            Status.actor_id == actor_id,
            Status.original_status_id == original_id,
            Status.type == StatusType.ANNOUNCE,
            Status.deleted_at.is_(None),
        )
    )


async def tombstone_status(session: AsyncSession, status: Status) -> None:
    """Marca o status como apagado e remove as visões derivadas."""
    status.deleted_at = utcnow()
    await session.flush()
    await timeline.remove_status_from_timelines(session, status.id)
    await timeline.delete_notifications(session, status_id=status.id)
    if status.type != StatusType.ANNOUNCE:
        boosts = await session.execute(
            select(Status.id).where(Status.original_status_id == status.id)
        )
        for boost_id in boosts.scalars().all():
            await timeline.remove_status_from_timelines(session, boost_id)


async def store_note(session: AsyncSession, note) -> Status:
    """Cria o Status de um Note/Question remoto já validado."""
    author = await session.get(Actor, note.attributed_to)
    published = parse_timestamp(note.published) or utcnow()
    is_poll = note.poll_choices is not None
    status = Status(
        id=note.id,
        actor_id=note.attributed_to,
        type=StatusType.QUESTION if is_poll else StatusType.NOTE,
        content=note.content,
        summary=note.summary,
        visibility=composer.visibility_from_addressing(
            note.to, note.cc, author.followers_url if author else None
        ),
        to=note.to,
        cc=note.cc,
        reply_id=note.in_reply_to,
        poll_choices=note.poll_choices,
        poll_multiple=note.poll_multiple,
        poll_ends_at=parse_timestamp(note.end_time) if is_poll else None,
        poll_totals=note.poll_totals,
        created_at=published,
        updated_at=parse_timestamp(note.updated) or published,
    )
    session.add(status)
    await session.flush()
    return status


def _same_text(status: Status, note) -> bool:
    return (
        status.content == note.content
        and status.summary == note.summary
        and status.poll_choices == note.poll_choices
    )
