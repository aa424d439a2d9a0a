"""
Testes para scripts/

Cobre:
- create_actor cria um actor local com chaves e recusa username repetido
- failed_deliveries lista jobs Failed e devolve à fila com --retry
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.models.actor import Actor
from app.models.delivery_job import JobStatus
from app.services.queue import DeliveryQueue


@pytest.mark.asyncio
async def test_create_actor(session_factory):
    from scripts import create_actor as script

    with (
        patch.object(script, "init_db", AsyncMock()),
        patch.object(script, "async_session_factory", session_factory),
    ):
        actor = await script.create_actor("alice", name="Alice", manual=True)
        duplicate = await script.create_actor("alice")

    assert duplicate is None
    assert actor.handle == "alice@fed.test"
    async with session_factory() as session:
        stored = await session.scalar(select(Actor).where(Actor.username == "alice"))
    assert stored.is_local
    assert stored.manually_approves_followers is True
    assert "BEGIN PUBLIC KEY" in stored.public_key_pem


@pytest.mark.asyncio
async def test_failed_deliveries_list_and_retry(session_factory, capsys):
    from scripts import failed_deliveries as script

    queue = DeliveryQueue(session_factory)
    [job] = await queue.enqueue(
        {"id": "https://fed.test/a/1", "type": "Like"},
        ["https://remote.example/inbox"],
        "https://fed.test/users/alice",
    )
    claimed = await queue.dequeue("w1")
    await queue.mark_failed(claimed.id, "remoto respondeu 403", retryable=False, worker_id="w1")

    with (
        patch.object(script, "init_db", AsyncMock()),
        patch("app.services.queue.async_session_factory", session_factory),
    ):
        await script.run([], limit=10)
        listed = capsys.readouterr().out
        await script.run([job.id, 999], limit=10)
        retried = capsys.readouterr().out

    assert "remote.example/inbox" in listed
    assert "403" in listed
    assert f"job {job.id} devolvido" in retried
    assert "job 999 não existe" in retried

    stats = await DeliveryQueue(session_factory).stats()
    assert stats == {JobStatus.PENDING: 1}
