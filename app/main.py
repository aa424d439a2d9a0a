import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apkit.server.app import ActivityPubServer
from apkit.server.responses import ActivityResponse
from apkit.models import (
    Nodeinfo, NodeinfoSoftware,
    NodeinfoServices, NodeinfoUsage, NodeinfoUsageUsers,
)
from apkit.client import WebfingerResource, WebfingerResult, WebfingerLink

from app.config import settings
from app.database import async_session_factory, get_session
from app.activitypub.actor import build_actor
from app.activitypub.discovery import ActorDirectory
from app.activitypub.handlers import register_handlers
from app.models.actor import Actor, DeletionStatus
from app.services import timeline
from app.services.actions import Outbox
from app.services.concurrency import KeyedLock
from app.services.inbound import InboxProcessor
from app.services.queue import DeliveryQueue

logging.basicConfig(level=logging.INFO)

# Lock, cache e fila compartilhados entre inbox e outbox
locks = KeyedLock()
directory = ActorDirectory()
delivery_queue = DeliveryQueue(async_session_factory)
processor = InboxProcessor(async_session_factory, directory, locks, delivery_queue)
outbox = Outbox(async_session_factory, delivery_queue, locks, directory)


@asynccontextmanager
async def lifespan(api_app):
    import app.database
    import workers.delivery_worker
    await app.database.init_db()
    worker_task = asyncio.create_task(workers.delivery_worker.run_pool(delivery_queue))
    yield
    worker_task.cancel()


api = ActivityPubServer(lifespan=lifespan)
register_handlers(api, processor)


async def _local_actor(session: AsyncSession, username: str) -> Actor | None:
    return await session.scalar(
        select(Actor).where(
            Actor.username == username,
            Actor.domain == settings.domain,
            Actor.private_key_pem.is_not(None),
        )
    )


@api.get("/users/{username}")
async def get_actor(username: str, session: AsyncSession = Depends(get_session)):
    actor = await _local_actor(session, username)
    if actor is None:
        return JSONResponse({"error": "Not found"}, status_code=404)
    if actor.deletion_status == DeletionStatus.REMOVED:
        return JSONResponse({"error": "Gone"}, status_code=410)
    return ActivityResponse(build_actor(actor))


async def _collection(session: AsyncSession, username: str, name: str, counter) -> Response:
    actor = await _local_actor(session, username)
    if actor is None or not actor.is_active:
        return JSONResponse({"error": "Not found"}, status_code=404)
    total = await counter(session, actor.id)
    return JSONResponse(
        {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": f"{actor.id}/{name}",
            "type": "OrderedCollection",
            "totalItems": total,
        },
        media_type="application/activity+json",
    )


@api.get("/users/{username}/followers")
async def get_followers(username: str, session: AsyncSession = Depends(get_session)):
    return await _collection(session, username, "followers", timeline.follower_count)


@api.get("/users/{username}/following")
async def get_following(username: str, session: AsyncSession = Depends(get_session)):
    return await _collection(session, username, "following", timeline.following_count)


@api.webfinger()
async def webfinger(request: Request, acct: WebfingerResource) -> Response:
    actor = None
    if acct.host == settings.domain:
        async with async_session_factory() as session:
            actor = await _local_actor(session, acct.username)
    if actor is not None and actor.is_active:
        link   = WebfingerLink(
            rel="self",
            type="application/activity+json",
            href=actor.id,
        )
        result = WebfingerResult(subject=acct, links=[link])
        return JSONResponse(result.to_json(), media_type="application/jrd+json")
    return JSONResponse({"error": "Not found"}, status_code=404)


@api.nodeinfo("/nodeinfo/2.1", "2.1")
async def nodeinfo():
    async with async_session_factory() as session:
        users = await session.scalar(
            select(func.count())
            .select_from(Actor)
            .where(
                Actor.private_key_pem.is_not(None),
                Actor.deletion_status == DeletionStatus.NONE,
            )
        )
    return ActivityResponse(
        Nodeinfo(
            version="2.1",
            software=NodeinfoSoftware(name=settings.software_name, version=settings.software_version),
            protocols=["activitypub"],
            services=NodeinfoServices(inbound=[], outbound=[]),
            openRegistrations=settings.open_registrations,
            usage=NodeinfoUsage(users=NodeinfoUsageUsers(total=users)),
            metadata={},
        )
    )


@api.get("/health")
async def health():
    return {"status": "ok"}
