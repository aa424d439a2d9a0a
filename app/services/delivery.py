"""
app/services/delivery.py

Uma entrega assinada para uma inbox remota, enviada pelo ActivityPubClient
do apkit.

Classificação da resposta:
- 2xx                         → sucesso
- 429, 5xx, rede e timeouts   → RetryableDeliveryError (volta para a fila)
- demais 4xx (e 3xx)          → PermanentDeliveryFailure (o remoto rejeitou;
                                repetir não adianta)
"""

import asyncio
import logging

import aiohttp
from apkit.client.asyncio.client import ActivityPubClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.activitypub.discovery import client_timeout, user_agent
from app.activitypub.keys import get_keys_for_actor
from app.activitypub.signature import CONTENT_TYPE
from app.config import settings
from app.errors import PermanentDeliveryFailure, RetryableDeliveryError
from app.models.actor import Actor
from app.models.delivery_job import DeliveryJob
from app.models.follow import Follow, FollowStatus

log = logging.getLogger(__name__)


def classify_response(status_code: int, inbox: str) -> None:
    if 200 <= status_code < 300:
        return
    if status_code == 429 or status_code >= 500:
        raise RetryableDeliveryError(f"{inbox} respondeu {status_code}", status_code)
    raise PermanentDeliveryFailure(f"{inbox} respondeu {status_code}", status_code)


async def deliver(job: DeliveryJob, actor: Actor) -> int:
    """
    Assina (draft-cavage, via apkit) e envia o payload do job.
    Retorna o status HTTP em caso de sucesso.
    """
    keys = get_keys_for_actor(actor)
    if not keys:
        raise PermanentDeliveryFailure(f"Actor {actor.id} não tem chave de assinatura")

    try:
        async with ActivityPubClient(
            user_agent=user_agent(), timeout=client_timeout(settings.delivery_timeout)
        ) as client:
            async with client.post(
                job.inbox,
                json=job.payload,
                headers={"Content-Type": CONTENT_TYPE, "Accept": CONTENT_TYPE},
                signatures=keys,
                sign_with=["draft-cavage"],
                allow_redirects=False,
            ) as response:
                status_code = response.status
    except asyncio.TimeoutError as e:
        raise RetryableDeliveryError(f"Timeout ao entregar em {job.inbox}") from e
    except aiohttp.ClientError as e:
        raise RetryableDeliveryError(f"Erro de rede ao entregar em {job.inbox}: {e}") from e

    classify_response(status_code, job.inbox)
    return status_code


async def reject_follows_from_inbox(
    session: AsyncSession, inbox: str, target_actor_id: str
) -> int:
    """
    Marca como Rejected os follows aceitos cujos followers recebem naquela inbox.
    Usado quando o servidor remoto responde 410 Gone.
    """
    result = await session.execute(
        select(Follow)
        .join(Actor, Actor.id == Follow.actor_id)
        .where(
            Follow.target_actor_id == target_actor_id,
            Follow.status == FollowStatus.ACCEPTED,
            (Actor.shared_inbox_url == inbox) | (Actor.inbox_url == inbox),
        )
    )
    follows = list(result.scalars().all())
    for follow in follows:
        follow.status = FollowStatus.REJECTED
    if follows:
        log.info(f"{len(follows)} follow(s) de {inbox} marcados como Rejected")
    return len(follows)
