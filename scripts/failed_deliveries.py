"""
Lista entregas que falharam em definitivo e, opcionalmente, devolve à fila.
Uso:
  uv run python scripts/failed_deliveries.py            # lista
  uv run python scripts/failed_deliveries.py --retry 42 # reenfileira o job 42
"""

import argparse
import asyncio

from app.database import init_db
from app.services.queue import DeliveryQueue


async def run(retry: list[int], limit: int) -> None:
    await init_db()
    queue = DeliveryQueue()

    for job_id in retry:
        job = await queue.retry_failed(job_id)
        if job is None:
            print(f"✗ job {job_id} não existe ou não está em Failed")
        else:
            print(f"✓ job {job_id} devolvido à fila ({job.inbox})")
    if retry:
        return

    print(await queue.stats())
    for job in await queue.list_failed(limit):
        print(f"{job.id:>6}  {job.activity_type:<8} {job.inbox}  [{job.attempts}x] {job.last_error}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Entregas com falha permanente")
    parser.add_argument("--retry", type=int, nargs="*", default=[])
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()
    asyncio.run(run(args.retry, args.limit))


if __name__ == "__main__":
    main()
