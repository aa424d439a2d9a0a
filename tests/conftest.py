"""
Fixtures compartilhadas entre todos os testes.
"""

import json

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


# ---------------------------------------------------------------------------
# Chaves RSA geradas em memória, sem arquivos em disco
# ---------------------------------------------------------------------------


def _pems(private_key) -> tuple[str, str]:
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture(scope="session")
def rsa_private_key():
    """Par de chaves do actor local, gerado uma única vez por sessão de testes."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_key_pems(rsa_private_key) -> tuple[str, str]:
    return _pems(rsa_private_key)


@pytest.fixture(scope="session")
def remote_private_key():
    """Chave do servidor remoto simulado, usada para assinar as atividades recebidas."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def remote_public_key_pem(remote_private_key) -> str:
    return _pems(remote_private_key)[1]


@pytest.fixture(scope="session")
def other_private_key():
    """Chave que não pertence a ninguém (assinaturas forjadas, rotação)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_public_key_pem(other_private_key) -> str:
    return _pems(other_private_key)[1]


# ---------------------------------------------------------------------------
# Configuração Dynaconf isolada para testes
# Usa monkeypatch para sobrescrever os atributos sem tocar em arquivos .toml
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def patch_settings(monkeypatch):
    """
    Sobrescreve as settings do Dynaconf com valores de teste.
    `autouse=True` garante que nenhum teste dependa do settings.toml local.
    """
    from app import config

    monkeypatch.setattr(config.settings, "domain", "fed.test")
    monkeypatch.setattr(config.settings, "software_name", "fedpub")
    monkeypatch.setattr(config.settings, "software_version", "0.1.0")
    monkeypatch.setattr(config.settings, "open_registrations", False)
    monkeypatch.setattr(config.settings, "delivery_max_attempts", 3)
    monkeypatch.setattr(config.settings, "delivery_backoff_base", 30)
    monkeypatch.setattr(config.settings, "delivery_backoff_max", 3600)
    monkeypatch.setattr(config.settings, "delivery_timeout", 5)
    monkeypatch.setattr(config.settings, "delivery_lease", 300)
    monkeypatch.setattr(config.settings, "worker_concurrency", 2)
    monkeypatch.setattr(config.settings, "worker_poll_interval", 0.01)
    monkeypatch.setattr(config.settings, "actor_cache_ttl", 3600)
    monkeypatch.setattr(config.settings, "actor_cache_size", 100)
    monkeypatch.setattr(config.settings, "signature_max_skew", 300)
    monkeypatch.setattr(config.settings, "fetch_timeout", 3)


# ---------------------------------------------------------------------------
# Banco SQLite em arquivo temporário, isolado por teste
# Arquivo (e não :memory:) para que cada sessão veja os commits das outras
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    from app.database import Base, import_models

    import_models()

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(bind=test_engine, expire_on_commit=False, class_=AsyncSession)


# ---------------------------------------------------------------------------
# Factories de actors
# ---------------------------------------------------------------------------


@pytest.fixture
def make_local_actor(session_factory, rsa_key_pems):
    """Cria e persiste um actor local em https://fed.test/users/<username>."""
    from app.activitypub.actor import new_local_actor

    async def _make(username: str = "alice", manual: bool = False):
        private_pem, public_pem = rsa_key_pems
        actor = new_local_actor(
            username, public_pem, private_pem, manually_approves_followers=manual
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(actor)
        return actor

    return _make


@pytest.fixture
def make_remote_actor(session_factory, remote_public_key_pem):
    """
    Cria e persiste um actor remoto já "buscado" (fetched_at = agora), então
    nenhum teste faz requisição de rede para obter a chave.
    """
    from app.database import utcnow
    from app.models.actor import Actor

    async def _make(
        username: str = "fulano",
        domain: str = "remote.example",
        shared_inbox: bool = True,
        public_key_pem: str | None = None,
    ):
        actor_id = f"https://{domain}/users/{username}"
        actor = Actor(
            id=actor_id,
            username=username,
            domain=domain,
            name=username,
            summary="",
            inbox_url=f"{actor_id}/inbox",
            shared_inbox_url=f"https://{domain}/inbox" if shared_inbox else None,
            followers_url=f"{actor_id}/followers",
            public_key_pem=public_key_pem or remote_public_key_pem,
            fetched_at=utcnow(),
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(actor)
        return actor

    return _make


@pytest.fixture
def make_follow(session_factory):
    """Cria uma aresta de follow diretamente no banco."""
    from app.models.follow import Follow, FollowStatus

    async def _make(follower, target, status: str = FollowStatus.ACCEPTED, activity_id: str | None = None):
        follow = Follow(
            actor_id=follower.id,
            target_actor_id=target.id,
            status=status,
            activity_id=activity_id or f"{follower.id}#follows/1",
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(follow)
        return follow

    return _make


# ---------------------------------------------------------------------------
# Requisições assinadas (lado remoto)
# ---------------------------------------------------------------------------


@pytest.fixture
def sign_activity(remote_private_key):
    """
    Monta (headers, body) de um POST assinado (draft-cavage, apsig) como o
    servidor remoto faria. `key` permite assinar com outra chave; `key_owner`
    com outro keyId; `date` fixa o header Date.
    """
    from apsig.draft import Signer

    def _sign(
        activity: dict,
        url: str = "https://fed.test/inbox",
        key=None,
        key_owner: str | None = None,
        date: str | None = None,
    ):
        body = json.dumps(activity).encode()
        owner = key_owner or activity["actor"]
        headers = {"Content-Type": "application/activity+json"}
        if date:
            headers["Date"] = date
        signed = Signer(
            headers=headers,
            private_key=key or remote_private_key,
            method="POST",
            url=url,
            key_id=f"{owner}#main-key",
            body=body,
        ).sign()
        return signed, body

    return _sign
