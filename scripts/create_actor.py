"""
Cria um actor local com um par de chaves RSA novo.
Uso: uv run python scripts/create_actor.py <username> [--name NOME] [--manual]
"""

import argparse
import asyncio

from sqlalchemy import select

from app.activitypub.actor import new_local_actor
from app.activitypub.keys import generate_key_pair
from app.config import settings
from app.database import async_session_factory, init_db
from app.models.actor import Actor


async def create_actor(username: str, name: str = "", manual: bool = False) -> Actor | None:
    await init_db()
    async with async_session_factory() as session:
        async with session.begin():
            existing = await session.scalar(
                select(Actor).where(Actor.username == username, Actor.domain == settings.domain)
            )
            if existing is not None:
                return None
            private_pem, public_pem = generate_key_pair()
            actor = new_local_actor(
                username,
                public_pem,
                private_pem,
                name=name,
                manually_approves_followers=manual,
            )
            session.add(actor)
    return actor


def main() -> None:
    parser = argparse.ArgumentParser(description="Cria um actor local")
    parser.add_argument("username")
    parser.add_argument("--name", default="")
    parser.add_argument("--manual", action="store_true", help="aprovar followers manualmente")
    args = parser.parse_args()

    actor = asyncio.run(create_actor(args.username, args.name, args.manual))
    if actor is None:
        print(f"✗ {args.username}@{settings.domain} já existe.")
        raise SystemExit(1)
    print(f"✓ {actor.handle} criado: {actor.id}")


if __name__ == "__main__":
    main()
