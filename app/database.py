"""
app/database.py

Banco de dados via SQLAlchemy assíncrono (aiosqlite por padrão).

Exporta:
- `engine`: engine assíncrona compartilhada
- `async_session_factory`: fábrica de sessões usada por inbox, outbox e fila
- `Base`: classe base dos modelos ORM
- `get_session()`: dependência FastAPI: uma transação por request
- `init_db()`: cria as tabelas no startup
- `utcnow()` / `as_utc()`: datas sempre em UTC
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

MODEL_MODULES = (
    "actor",
    "delivery_job",
    "follow",
    "like",
    "notification",
    "poll_vote",
    "status",
    "timeline",
)


def _connect_args(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {}
    # Workers, inbox e outbox escrevem em paralelo: espera o lock em vez de falhar
    return {"check_same_thread": False, "timeout": 30}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    connect_args=_connect_args(settings.database_url),
)

# expire_on_commit=False: os objetos retornados pelas ações seguem legíveis
# depois do commit, sem lazy-load fora da sessão
async_session_factory = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite devolve datetimes sem tzinfo; normaliza tudo para UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Sessão com transação aberta; commit ao final, rollback se o handler levantar."""
    async with async_session_factory() as session:
        async with session.begin():
            yield session


def import_models() -> None:
    """Registra todos os modelos no metadata da Base."""
    import importlib

    for name in MODEL_MODULES:
        importlib.import_module(f"app.models.{name}")


async def init_db() -> None:
    """Cria as tabelas que ainda não existem. Chamado uma vez no lifespan."""
    import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
