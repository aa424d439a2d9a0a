"""
workers/delivery_worker.py

Pool de workers que consome a fila durável de entregas.

Fluxo de cada job:
1. Reivindica o próximo job vencido (DeliveryQueue.dequeue)
2. Cancela se o status de origem já foi apagado (Create/Update/Announce)
3. Assina e entrega na inbox de destino
4. Reporta sucesso ou falha (retentável ou permanente) para a fila

Falhas são isoladas por job: um destino com erro nunca impede os demais.
"""

import asyncio
import logging
import uuid

from app.config import settings
from app.database import async_session_factory
from app.errors import PermanentDeliveryFailure, RetryableDeliveryError
from app.models.actor import Actor
from app.models.delivery_job import DeliveryJob
from app.models.status import Status
from app.services.delivery import deliver, reject_follows_from_inbox
from app.services.queue import DeliveryQueue

log = logging.getLogger(__name__)

# Atividades que ficam obsoletas quando o status de origem é apagado
CANCELLABLE_TYPES = ("Create", "Update", "Announce")


async def process_job(queue: DeliveryQueue, job: DeliveryJob, worker_id: str) -> str:
    async with queue.session_factory() as session:
        actor = await session.get(Actor, job.actor_id)
        status = await session.get(Status, job.status_id) if job.status_id else None

    if job.activity_type in CANCELLABLE_TYPES and job.status_id:
        if status is None or status.is_tombstoned:
            log.info(f"Job {job.id} cancelado: {job.status_id} foi apagado")
            await queue.mark_complete(job.id, worker_id=worker_id)
            return "cancelled"

    if actor is None:
        await queue.mark_failed(
            job.id, f"Actor {job.actor_id} não existe", retryable=False, worker_id=worker_id
        )
        return "failed"

    try:
        await deliver(job, actor)
    except PermanentDeliveryFailure as e:
        await queue.mark_failed(job.id, str(e), retryable=False, worker_id=worker_id)
        if e.status_code == 410:
            async with queue.session_factory() as session:
                async with session.begin():
                    await reject_follows_from_inbox(session, job.inbox, job.actor_id)
        return "failed"
    except RetryableDeliveryError as e:
        await queue.mark_failed(job.id, str(e), worker_id=worker_id)
        return "retry"

    await queue.mark_complete(job.id, worker_id=worker_id)
    log.info(f"Atividade {job.activity_id} entregue em {job.inbox}")
    return "delivered"


async def run_once(queue: DeliveryQueue, worker_id: str) -> str | None:
    """Processa um job, se houver algum vencido. Retorna o resultado ou None."""
    job = await queue.dequeue(worker_id)
    if job is None:
        return None
    return await process_job(queue, job, worker_id)


async def run_worker(queue: DeliveryQueue, worker_id: str | None = None) -> None:
    worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
    log.info(f"Worker de entrega {worker_id} iniciado")
    while True:
        try:
            if await run_once(queue, worker_id) is None:
                await queue.wait_for_jobs(settings.worker_poll_interval)
        except Exception as e:
            log.error(f"Erro no worker {worker_id}: {e}", exc_info=True)
            await asyncio.sleep(settings.worker_poll_interval)


async def run_pool(queue: DeliveryQueue | None = None, concurrency: int | None = None) -> None:
    queue = queue or DeliveryQueue(async_session_factory)
    concurrency = concurrency or settings.worker_concurrency
    await asyncio.gather(
        *(run_worker(queue, f"worker-{n}") for n in range(concurrency))
    )
