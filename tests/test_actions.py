"""
Testes para app/services/actions.py e app/services/identity.py

Cobre:
- escopos: sem identidade → 401; escopo não concedido → 401; "write" cobre subescopos
- publish_note sem followers: zero jobs e o status aparece na home do autor
- publish_note com followers remotos: um job por inbox compartilhada
- publish_note com enquete, resposta e menção direta
- validações: sem conteúdo, enquete com uma opção, visibilidade desconhecida
- update_note grava histórico e enfileira Update; enquete leva os votos
  agregados e opções novas zeram os votos
- delete_status: tombstone, Delete enfileirado, repetição é no-op
- boost/unboost idempotentes; status privado não pode ser compartilhado
- like/unlike idempotentes; like em status inexistente → NotFoundError
- follow remoto (Requested + Follow enfileirado) e local (sem rede); remoto
  inalcançável (ValueError do apkit) → NotFoundError
- unfollow envia Undo; accept/reject de pedidos pendentes
- remoção de conta: agendar → executar; Delete do actor para followers
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from app.activitypub import composer
from app.activitypub.discovery import ActorDirectory
from app.database import utcnow
from app.errors import AuthorizationError, InvalidActionError, NotFoundError
from app.models.actor import Actor, DeletionStatus
from app.models.delivery_job import DeliveryJob
from app.models.follow import Follow, FollowStatus
from app.models.like import Like
from app.models.poll_vote import PollVote
from app.models.status import Status, StatusType, Visibility
from app.models.timeline import TimelineKind
from app.services import timeline
from app.services.actions import Outbox
from app.services.identity import Identity, StaticIdentityProvider, authorize, require_scope
from app.services.queue import DeliveryQueue

PUBLIC = composer.PUBLIC


@pytest.fixture
def outbox(session_factory):
    directory = ActorDirectory()
    directory.fetch = AsyncMock(side_effect=NotFoundError("sem rede nos testes"))
    return Outbox(session_factory, DeliveryQueue(session_factory), directory=directory)


@pytest_asyncio.fixture
async def alice(make_local_actor):
    return await make_local_actor("alice")


@pytest.fixture
def me(alice):
    return Identity(actor_id=alice.id)


async def _jobs(session_factory) -> list[DeliveryJob]:
    async with session_factory() as session:
        result = await session.execute(select(DeliveryJob).order_by(DeliveryJob.id))
        return list(result.scalars().all())


async def _count(session_factory, model, *where) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*where))


# ---------------------------------------------------------------------------
# Identidade
# ---------------------------------------------------------------------------


def test_require_scope():
    identity = Identity(actor_id="a", scopes=frozenset({"read"}))

    assert require_scope(identity, "read") is identity
    with pytest.raises(AuthorizationError):
        require_scope(identity, "write:statuses")
    with pytest.raises(AuthorizationError):
        require_scope(None, "read")
    assert Identity(actor_id="a", scopes=frozenset({"write"})).allows("write:follows")


@pytest.mark.asyncio
async def test_authorize_with_provider():
    provider = StaticIdentityProvider({"token-1": Identity(actor_id="a")})

    assert (await authorize(provider, "token-1", "write")).actor_id == "a"
    with pytest.raises(AuthorizationError):
        await authorize(provider, "bad", "read")
    with pytest.raises(AuthorizationError):
        await authorize(provider, None, "read")


@pytest.mark.asyncio
async def test_read_only_identity_cannot_publish(outbox, alice):
    with pytest.raises(AuthorizationError):
        await outbox.publish_note(Identity(actor_id=alice.id, scopes=frozenset({"read"})), "oi")


# ---------------------------------------------------------------------------
# Publicação
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_publish_without_followers(outbox, session_factory, alice, me):
    status = await outbox.publish_note(me, "<p>primeiro post</p>")

    assert await _jobs(session_factory) == []
    async with session_factory() as session:
        home = await timeline.get_timeline(session, TimelineKind.HOME, alice.id)
    assert [s.id for s in home] == [status.id]
    assert status.to == [PUBLIC]
    assert status.cc == [alice.followers_url]


@pytest.mark.asyncio
async def test_publish_fans_out_per_shared_inbox(
    outbox, session_factory, alice, me, make_remote_actor, make_follow
):
    for name in ("bob", "carol"):
        await make_follow(await make_remote_actor(name), alice)
    await make_follow(await make_remote_actor("dave", domain="other.example", shared_inbox=False), alice)

    status = await outbox.publish_note(me, "oi")

    jobs = await _jobs(session_factory)
    assert sorted(job.inbox for job in jobs) == [
        "https://other.example/users/dave/inbox",
        "https://remote.example/inbox",
    ]
    assert all(job.activity_id == f"{status.id}/activity" for job in jobs)
    assert all(job.status_id == status.id for job in jobs)


@pytest.mark.asyncio
async def test_publish_poll_reply_and_direct_mention(outbox, session_factory, alice, me, make_remote_actor):
    bob = await make_remote_actor("bob")
    poll = await outbox.publish_note(me, "qual?", poll_choices=["a", "b"])
    reply = await outbox.publish_note(me, "resposta", in_reply_to=poll.id)
    direct = await outbox.publish_note(me, "psiu", visibility=Visibility.DIRECT, mentions=[bob.id])

    assert poll.type == StatusType.QUESTION
    assert poll.poll_choices == ["a", "b"]
    assert reply.reply_id == poll.id
    assert direct.to == [bob.id]
    assert direct.cc == []

    jobs = await _jobs(session_factory)
    assert [job.inbox for job in jobs] == [bob.delivery_inbox]
    assert jobs[0].payload["object"]["tag"] == [{"type": "Mention", "href": bob.id}]


@pytest.mark.asyncio
async def test_publish_mention_by_local_handle(outbox, alice, me, make_local_actor):
    bob = await make_local_actor("bob")

    status = await outbox.publish_note(me, "oi @bob", mentions=["@bob@fed.test"])

    assert bob.id in status.cc


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": ""},
        {"content": "x", "poll_choices": ["só uma"]},
        {"content": "x", "visibility": "secret"},
    ],
)
async def test_publish_validation(outbox, alice, me, kwargs):
    with pytest.raises(InvalidActionError):
        await outbox.publish_note(me, **kwargs)


@pytest.mark.asyncio
async def test_reply_to_unknown_status(outbox, alice, me):
    with pytest.raises(NotFoundError):
        await outbox.publish_note(me, "x", in_reply_to="https://fed.test/statuses/404")


@pytest.mark.asyncio
async def test_publish_for_unknown_actor(outbox, session_factory):
    with pytest.raises(NotFoundError):
        await outbox.publish_note(Identity(actor_id="https://fed.test/users/ghost"), "x")


# ---------------------------------------------------------------------------
# Edição e remoção
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_note_keeps_history(outbox, session_factory, alice, me, make_remote_actor, make_follow):
    await make_follow(await make_remote_actor("bob"), alice)
    status = await outbox.publish_note(me, "v1")

    updated = await outbox.update_note(me, status.id, "v2")

    assert updated.content == "v2"
    assert updated.version == 2
    history = await outbox.status_history(status.id)
    assert [edit.content for edit in history] == ["v1"]
    types = [job.activity_type for job in await _jobs(session_factory)]
    assert types == ["Create", "Update"]


@pytest.mark.asyncio
async def test_poll_edit_carries_totals_and_new_choices_reset_votes(
    outbox, session_factory, alice, me, make_remote_actor, make_follow
):
    bob = await make_remote_actor("bob")
    await make_follow(bob, alice)
    ends_at = utcnow() + timedelta(days=1)
    poll = await outbox.publish_note(
        me, "qual?", poll_choices=["a", "b"], poll_multiple=True, poll_ends_at=ends_at
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(PollVote(actor_id=bob.id, status_id=poll.id, choice=1))

    await outbox.update_note(me, poll.id, "qual mesmo?")
    await outbox.update_note(me, poll.id, "qual mesmo?", poll_choices=["a", "c"])

    jobs = await _jobs(session_factory)
    assert [job.activity_type for job in jobs] == ["Create", "Update", "Update"]
    create, same_choices, new_choices = (job.payload["object"] for job in jobs)
    assert "endTime" in create
    assert [o["replies"]["totalItems"] for o in same_choices["anyOf"]] == [0, 1]
    assert [o["name"] for o in new_choices["anyOf"]] == ["a", "c"]
    assert [o["replies"]["totalItems"] for o in new_choices["anyOf"]] == [0, 0]
    assert await _count(session_factory, PollVote) == 0


@pytest.mark.asyncio
async def test_update_of_foreign_status_is_not_found(outbox, alice, me, make_local_actor):
    bob = await make_local_actor("bob")
    status = await outbox.publish_note(Identity(actor_id=bob.id), "do bob")

    with pytest.raises(NotFoundError):
        await outbox.update_note(me, status.id, "hack")


@pytest.mark.asyncio
async def test_delete_status(outbox, session_factory, alice, me, make_remote_actor, make_follow):
    await make_follow(await make_remote_actor("bob"), alice)
    status = await outbox.publish_note(me, "tchau")

    assert await outbox.delete_status(me, status.id) is True
    assert await outbox.delete_status(me, status.id) is False

    async with session_factory() as session:
        stored = await session.get(Status, status.id)
        home = await timeline.get_timeline(session, TimelineKind.HOME, alice.id)
    assert stored.is_tombstoned
    assert home == []
    jobs = await _jobs(session_factory)
    assert [job.activity_type for job in jobs] == ["Create", "Delete"]
    assert jobs[1].payload["object"]["type"] == "Tombstone"


# ---------------------------------------------------------------------------
# Boost / Like
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_boost_and_unboost(outbox, session_factory, alice, me, make_local_actor):
    bob = await make_local_actor("bob")
    original = await outbox.publish_note(Identity(actor_id=bob.id), "compartilhe")

    first = await outbox.boost(me, original.id)
    second = await outbox.boost(me, original.id)

    assert first.id == second.id
    assert first.type == StatusType.ANNOUNCE
    async with session_factory() as session:
        assert await timeline.reblog_count(session, original.id) == 1

    assert await outbox.unboost(me, original.id) is True
    assert await outbox.unboost(me, original.id) is False
    async with session_factory() as session:
        assert await timeline.reblog_count(session, original.id) == 0


@pytest.mark.asyncio
async def test_private_status_cannot_be_boosted(outbox, alice, me, make_local_actor):
    bob = await make_local_actor("bob")
    private = await outbox.publish_note(Identity(actor_id=bob.id), "só followers", visibility=Visibility.PRIVATE)

    with pytest.raises(InvalidActionError):
        await outbox.boost(me, private.id)


@pytest.mark.asyncio
async def test_like_and_unlike_remote_status(outbox, session_factory, alice, me, make_remote_actor):
    bob = await make_remote_actor("bob")
    status = Status(id=f"{bob.id}/statuses/1", actor_id=bob.id, type=StatusType.NOTE, to=[PUBLIC], cc=[])
    async with session_factory() as session:
        async with session.begin():
            session.add(status)

    like = await outbox.like(me, status.id)
    again = await outbox.like(me, status.id)
    assert like.id == again.id

    assert await outbox.unlike(me, status.id) is True
    assert await outbox.unlike(me, status.id) is False
    assert await _count(session_factory, Like) == 0

    jobs = await _jobs(session_factory)
    assert [job.activity_type for job in jobs] == ["Like", "Undo"]
    assert jobs[1].payload["object"]["id"] == like.activity_id
    assert all(job.inbox == bob.delivery_inbox for job in jobs)


@pytest.mark.asyncio
async def test_like_unknown_status(outbox, alice, me):
    with pytest.raises(NotFoundError):
        await outbox.like(me, "https://fed.test/statuses/404")


# ---------------------------------------------------------------------------
# Follow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_follow_remote_sends_follow(outbox, session_factory, alice, me, make_remote_actor):
    bob = await make_remote_actor("bob")

    follow = await outbox.follow(me, bob.id)
    again = await outbox.follow(me, bob.id)

    assert follow.status == FollowStatus.REQUESTED
    assert again.id == follow.id
    jobs = await _jobs(session_factory)
    assert len(jobs) == 1
    assert jobs[0].activity_type == "Follow"
    assert jobs[0].payload["object"] == bob.id


@pytest.mark.asyncio
async def test_follow_local_is_immediate(outbox, session_factory, alice, me, make_local_actor):
    bob = await make_local_actor("bob")
    carol = await make_local_actor("carol", manual=True)

    assert (await outbox.follow(me, "bob")).status == FollowStatus.ACCEPTED
    assert (await outbox.follow(me, carol.id)).status == FollowStatus.REQUESTED
    assert await _jobs(session_factory) == []

    async with session_factory() as session:
        assert await timeline.follower_count(session, bob.id) == 1


@pytest.mark.asyncio
async def test_follow_self_is_invalid(outbox, alice, me):
    with pytest.raises(InvalidActionError):
        await outbox.follow(me, alice.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["https://gone.example/users/x", "x@gone.example"])
async def test_follow_unreachable_remote_is_not_found(session_factory, alice, me, target):
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    # apkit sinaliza resposta não-2xx com ValueError
    client.actor.fetch = AsyncMock(side_effect=ValueError("Failed to resolve Actor"))
    client.actor.resolve = AsyncMock(side_effect=ValueError("Failed to resolve WebFinger"))
    outbox = Outbox(session_factory, DeliveryQueue(session_factory))

    with patch("app.activitypub.discovery.ActivityPubClient", return_value=client):
        with pytest.raises(NotFoundError):
            await outbox.follow(me, target)

    assert await _count(session_factory, Follow) == 0
    assert await _jobs(session_factory) == []


@pytest.mark.asyncio
async def test_unfollow_remote_sends_undo(outbox, session_factory, alice, me, make_remote_actor):
    bob = await make_remote_actor("bob")
    follow = await outbox.follow(me, bob.id)

    assert await outbox.unfollow(me, bob.id) is True
    assert await outbox.unfollow(me, bob.id) is False

    jobs = await _jobs(session_factory)
    assert [job.activity_type for job in jobs] == ["Follow", "Undo"]
    assert jobs[1].payload["object"]["id"] == follow.activity_id


@pytest.mark.asyncio
async def test_accept_and_reject_follow_requests(outbox, session_factory, make_local_actor, make_remote_actor, make_follow):
    carol = await make_local_actor("carol", manual=True)
    bob = await make_remote_actor("bob")
    dave = await make_remote_actor("dave", domain="other.example")
    await make_follow(bob, carol, status=FollowStatus.REQUESTED)
    await make_follow(dave, carol, status=FollowStatus.REQUESTED)
    identity = Identity(actor_id=carol.id)

    accepted = await outbox.accept_follow_request(identity, bob.id)
    rejected = await outbox.reject_follow_request(identity, dave.id)

    assert accepted.status == FollowStatus.ACCEPTED
    assert rejected.status == FollowStatus.REJECTED
    jobs = await _jobs(session_factory)
    assert [(job.activity_type, job.inbox) for job in jobs] == [
        ("Accept", "https://remote.example/inbox"),
        ("Reject", "https://other.example/inbox"),
    ]
    with pytest.raises(NotFoundError):
        await outbox.accept_follow_request(identity, bob.id)


# ---------------------------------------------------------------------------
# Remoção de conta
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_actor_deletion_lifecycle(outbox, session_factory, alice, me, make_remote_actor, make_follow):
    bob = await make_remote_actor("bob")
    dave = await make_remote_actor("dave", domain="other.example")
    await make_follow(bob, alice)
    await make_follow(alice, dave)
    await outbox.publish_note(me, "último post")

    with pytest.raises(InvalidActionError):
        await outbox.delete_actor(alice.id)

    await outbox.schedule_actor_deletion(me)
    with pytest.raises(InvalidActionError):
        await outbox.publish_note(me, "ainda aqui?")

    removed = await outbox.delete_actor(alice.id)
    assert removed.deletion_status == DeletionStatus.REMOVED

    async with session_factory() as session:
        actor = await session.get(Actor, alice.id)
        open_follows = await session.scalar(
            select(func.count()).select_from(Follow).where(Follow.status != FollowStatus.UNDO)
        )
    assert actor.deletion_status == DeletionStatus.REMOVED
    assert open_follows == 0
    assert await _count(session_factory, Status, Status.deleted_at.is_(None)) == 0

    deletes = [job for job in await _jobs(session_factory) if job.activity_type == "Delete"]
    assert sorted(job.inbox for job in deletes) == ["https://other.example/inbox", "https://remote.example/inbox"]
    # Repetir não gera novas entregas
    await outbox.delete_actor(alice.id)
    assert len([job for job in await _jobs(session_factory) if job.activity_type == "Delete"]) == 2
