"""
app/services/queue.py

Fila durável de jobs de entrega, persistida na tabela `delivery_jobs`.

Contrato:
- `enqueue()`: um job por destino; par (atividade, inbox) já conhecido é no-op
- `dequeue()`: reivindica um job vencido via compare-and-set; nunca o mesmo
  job para dois workers ao mesmo tempo (lease com prazo); reaver um lease
  expirado conta como tentativa
- `mark_complete()`: estado terminal Delivered (a linha fica para idempotência)
- `mark_failed()`: backoff exponencial; após o máximo de tentativas, ou em
  falha não retentável, estado terminal Failed
"""

import asyncio
import logging
from datetime import timedelta
from typing import Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.database import async_session_factory, utcnow
from app.models.delivery_job import DeliveryJob, JobStatus, identity_key

log = logging.getLogger(__name__)

CLAIM_BATCH = 10


def backoff_delay(attempts: int) -> timedelta:
    """30s, 60s, 120s, ... limitado por DELIVERY_BACKOFF_MAX."""
    seconds = settings.delivery_backoff_base * 2 ** max(attempts - 1, 0)
    return timedelta(seconds=min(seconds, settings.delivery_backoff_max))


class DeliveryQueue:
    def __init__(self, session_factory: async_sessionmaker | None = None):
        self.session_factory = session_factory or async_session_factory
        self._wakeup = asyncio.Event()

    # -----------------------------------------------------------------------
    # Produção
    # -----------------------------------------------------------------------

    async def enqueue(
        self,
        activity: dict,
        destinations: Iterable[str],
        actor_id: str,
        status_id: str | None = None,
    ) -> list[DeliveryJob]:
        destinations = list(dict.fromkeys(destinations))
        if not destinations:
            return []
        try:
            jobs = await self._insert_jobs(activity, destinations, actor_id, status_id)
        except IntegrityError:
            # Outro processo inseriu a mesma identity_key entre a checagem e o commit
            jobs = await self._insert_jobs(activity, destinations, actor_id, status_id)

        if jobs:
            log.info(f"{len(jobs)} job(s) de entrega enfileirado(s) para {activity['id']}")
            self._wakeup.set()
        return jobs

    async def dispatch(self, outgoing: Iterable) -> int:
        """Enfileira entregas planejadas (resolver.Outgoing) depois do commit da mutação."""
        total = 0
        for item in outgoing:
            jobs = await self.enqueue(item.activity, item.inboxes, item.actor_id, item.status_id)
            total += len(jobs)
        return total

    async def _insert_jobs(self, activity, destinations, actor_id, status_id):
        keys = {identity_key(activity["id"], inbox): inbox for inbox in destinations}
        jobs = []
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(DeliveryJob.identity_key).where(
                        DeliveryJob.identity_key.in_(list(keys))
                    )
                )
                known = set(result.scalars().all())
                for key, inbox in keys.items():
                    if key in known:
                        log.info(f"Job já conhecido para {activity['id']} → {inbox}, ignorado")
                        continue
                    job = DeliveryJob(
                        identity_key=key,
                        activity_id=activity["id"],
                        activity_type=activity["type"],
                        actor_id=actor_id,
                        status_id=status_id,
                        inbox=inbox,
                        payload=activity,
                        status=JobStatus.PENDING,
                        attempts=0,
                        next_attempt_at=utcnow(),
                    )
                    session.add(job)
                    jobs.append(job)
        return jobs

    # -----------------------------------------------------------------------
    # Consumo
    # -----------------------------------------------------------------------

    def _claimable(self, now):
        return or_(
            and_(DeliveryJob.status == JobStatus.PENDING, DeliveryJob.next_attempt_at <= now),
            # Lease expirado: o worker anterior morreu no meio da entrega
            and_(DeliveryJob.status == JobStatus.IN_PROGRESS, DeliveryJob.locked_until < now),
        )

    async def dequeue(self, worker_id: str) -> DeliveryJob | None:
        """
        Reivindica o próximo job vencido. Reaver um lease expirado conta como
        uma tentativa (o worker anterior não terminou a entrega); ao atingir
        DELIVERY_MAX_ATTEMPTS o job vai para Failed em vez de ser entregue.
        """
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(DeliveryJob.id, DeliveryJob.status, DeliveryJob.attempts)
                    .where(self._claimable(now))
                    .order_by(DeliveryJob.next_attempt_at, DeliveryJob.id)
                    .limit(CLAIM_BATCH)
                )
                for job_id, status, attempts in result.all():
                    values = {
                        "status": JobStatus.IN_PROGRESS,
                        "locked_by": worker_id,
                        "locked_until": now + timedelta(seconds=settings.delivery_lease),
                        "updated_at": now,
                    }
                    if status == JobStatus.IN_PROGRESS:
                        values["attempts"] = attempts + 1
                        values["last_error"] = "Lease expirado sem conclusão da entrega"
                        if attempts + 1 >= settings.delivery_max_attempts:
                            values.update(status=JobStatus.FAILED, locked_by=None, locked_until=None)

                    claimed = await session.execute(
                        update(DeliveryJob)
                        .where(
                            DeliveryJob.id == job_id,
                            DeliveryJob.attempts == attempts,
                            self._claimable(now),
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        continue
                    if values["status"] == JobStatus.FAILED:
                        log.error(
                            f"Job {job_id} desistido após {attempts + 1} lease(s) expirado(s)"
                        )
                        continue
                    return await session.get(DeliveryJob, job_id)
        return None

    async def wait_for_jobs(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _owned_job(self, session, job_id: int, worker_id: str | None):
        job = await session.get(DeliveryJob, job_id)
        if job is None or job.status in (JobStatus.DELIVERED, JobStatus.FAILED):
            return None
        if worker_id is not None and job.locked_by != worker_id:
            log.warning(f"Job {job_id} não pertence mais ao worker {worker_id}")
            return None
        return job

    async def mark_complete(self, job_id: int, worker_id: str | None = None) -> DeliveryJob | None:
        async with self.session_factory() as session:
            async with session.begin():
                job = await self._owned_job(session, job_id, worker_id)
                if job is None:
                    return None
                job.status = JobStatus.DELIVERED
                job.locked_by = None
                job.locked_until = None
                job.last_error = None
        return job

    async def mark_failed(
        self,
        job_id: int,
        reason: str,
        retryable: bool = True,
        worker_id: str | None = None,
    ) -> DeliveryJob | None:
        async with self.session_factory() as session:
            async with session.begin():
                job = await self._owned_job(session, job_id, worker_id)
                if job is None:
                    return None
                job.attempts += 1
                job.last_error = reason[:2000]
                job.locked_by = None
                job.locked_until = None

                if not retryable or job.attempts >= settings.delivery_max_attempts:
                    job.status = JobStatus.FAILED
                    log.error(
                        f"Entrega {job.activity_id} → {job.inbox} desistida após "
                        f"{job.attempts} tentativa(s): {reason}"
                    )
                else:
                    job.status = JobStatus.PENDING
                    job.next_attempt_at = utcnow() + backoff_delay(job.attempts)
                    log.warning(
                        f"Entrega {job.activity_id} → {job.inbox} falhou "
                        f"(tentativa {job.attempts}), nova tentativa em {job.next_attempt_at}"
                    )
        return job

    # -----------------------------------------------------------------------
    # Operação
    # -----------------------------------------------------------------------

    async def list_failed(self, limit: int = 100) -> list[DeliveryJob]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryJob)
                .where(DeliveryJob.status == JobStatus.FAILED)
                .order_by(DeliveryJob.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def retry_failed(self, job_id: int) -> DeliveryJob | None:
        """Devolve um job Failed para a fila, com contador zerado (ação do operador)."""
        async with self.session_factory() as session:
            async with session.begin():
                job = await session.get(DeliveryJob, job_id)
                if job is None or job.status != JobStatus.FAILED:
                    return None
                job.status = JobStatus.PENDING
                job.attempts = 0
                job.next_attempt_at = utcnow()
        self._wakeup.set()
        return job

    async def stats(self) -> dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryJob.status, func.count()).group_by(DeliveryJob.status)
            )
            return {status: count for status, count in result.all()}
