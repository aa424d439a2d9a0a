"""
app/activitypub/discovery.py

Descoberta de actors e objetos remotos, sempre pelo ActivityPubClient do apkit.

- `resolve_handle()`: WebFinger: `user@domain` → URI do actor
- `ActorCache`: cache explícito com TTL e invalidação, injetado
- `ActorDirectory`: busca o documento remoto e espelha no banco;
  `fetch_object()` traz objetos (ex: o Note de um Announce)

Toda I/O de rede acontece aqui, fora de qualquer lock do processador, e
cada busca é limitada por FETCH_TIMEOUT.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import urlsplit

import aiohttp
from apkit.client.asyncio.client import ActivityPubClient
from cachetools import TTLCache
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import as_utc, utcnow
from app.errors import NotFoundError, ValidationError
from app.models.actor import Actor

log = logging.getLogger(__name__)

ACTIVITY_JSON = "application/activity+json"


def user_agent() -> str:
    return f"{settings.software_name}/{settings.software_version} (+https://{settings.domain})"


def client_timeout(seconds: float | None = None) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=seconds or settings.fetch_timeout)


def _client() -> ActivityPubClient:
    return ActivityPubClient(user_agent=user_agent(), timeout=client_timeout())


@dataclass(frozen=True)
class RemoteActor:
    id: str
    username: str
    domain: str
    name: str
    summary: str
    inbox_url: str
    shared_inbox_url: str | None
    followers_url: str
    public_key_pem: str
    manually_approves_followers: bool = False


def _field(obj, *names):
    """Lê um campo de um modelo apkit ou de um dict JSON-LD."""
    if obj is None:
        return None
    for name in names:
        value = obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)
        if value is not None:
            return value
    return None


def remote_actor_from_document(document) -> RemoteActor:
    actor_id = _field(document, "id")
    inbox = _field(document, "inbox")
    public_key = _field(document, "public_key", "publicKey")
    public_key_pem = _field(public_key, "public_key_pem", "publicKeyPem")

    if not actor_id or not inbox or not public_key_pem:
        raise ValidationError("Documento do actor remoto sem campos obrigatórios")

    actor_id = str(actor_id)
    shared_inbox = _field(_field(document, "endpoints"), "shared_inbox", "sharedInbox")
    username = _field(document, "preferred_username", "preferredUsername")

    return RemoteActor(
        id=actor_id,
        username=str(username or actor_id.rstrip("/").split("/")[-1]),
        domain=urlsplit(actor_id).netloc,
        name=str(_field(document, "name") or ""),
        summary=str(_field(document, "summary") or ""),
        inbox_url=str(inbox),
        shared_inbox_url=str(shared_inbox) if shared_inbox else None,
        followers_url=str(_field(document, "followers") or f"{actor_id}/followers"),
        public_key_pem=str(public_key_pem),
        manually_approves_followers=bool(
            _field(document, "manually_approves_followers", "manuallyApprovesFollowers")
        ),
    )


async def resolve_handle(handle: str) -> str:
    """Resolve `user@domain` (com ou sem @ inicial) via WebFinger."""
    username, _, domain = handle.lstrip("@").partition("@")
    if not username or not domain:
        raise ValidationError(f"Handle inválido: {handle!r}")

    try:
        async with asyncio.timeout(settings.fetch_timeout):
            async with _client() as client:
                result = await client.actor.resolve(username, domain)
    except TimeoutError as e:
        raise NotFoundError(f"WebFinger de {handle} não respondeu a tempo") from e
    except (aiohttp.ClientError, ValueError) as e:
        raise NotFoundError(f"WebFinger sem resultado para {handle}: {e}") from e

    links = [link for link in result.links if link.rel == "self" and link.href]
    # Preferimos o link ActivityPub quando há mais de um `self`
    links.sort(key=lambda link: link.type != ACTIVITY_JSON)
    if not links:
        raise NotFoundError(f"WebFinger sem link self para {handle}")
    return links[0].href


class ActorCache:
    """Cache de actors remotos com TTL; invalidado explicitamente em rotação de chave."""

    def __init__(self, maxsize: int | None = None, ttl: float | None = None):
        self._cache = TTLCache(
            maxsize=maxsize or settings.actor_cache_size,
            ttl=ttl if ttl is not None else settings.actor_cache_ttl,
        )

    def get(self, actor_id: str) -> RemoteActor | None:
        return self._cache.get(actor_id)

    def put(self, remote: RemoteActor) -> None:
        self._cache[remote.id] = remote

    def invalidate(self, actor_id: str) -> None:
        self._cache.pop(actor_id, None)

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, actor_id: str) -> bool:
        return actor_id in self._cache


class ActorDirectory:
    def __init__(self, cache: ActorCache | None = None):
        self.cache = cache or ActorCache()

    async def fetch(self, actor_id: str) -> RemoteActor:
        try:
            async with asyncio.timeout(settings.fetch_timeout):
                async with _client() as client:
                    document = await client.actor.fetch(actor_id)
        except TimeoutError as e:
            raise NotFoundError(f"Actor remoto {actor_id} não respondeu a tempo") from e
        except (aiohttp.ClientError, ValueError) as e:
            # apkit levanta ValueError para respostas não-2xx
            raise NotFoundError(f"Actor remoto não encontrado: {actor_id}: {e}") from e
        if not document:
            raise NotFoundError(f"Actor remoto não encontrado: {actor_id}")
        return remote_actor_from_document(document)

    async def fetch_object(self, object_id: str) -> dict:
        """Busca um objeto remoto qualquer (JSON cru, para o schema validar)."""
        try:
            async with asyncio.timeout(settings.fetch_timeout):
                async with _client() as client:
                    async with client.get(object_id, headers={"Accept": ACTIVITY_JSON}) as response:
                        if not response.ok:
                            raise NotFoundError(
                                f"Objeto remoto {object_id} respondeu {response.status}"
                            )
                        document = await response.json(content_type=None)
        except TimeoutError as e:
            raise NotFoundError(f"Objeto remoto {object_id} não respondeu a tempo") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise NotFoundError(f"Objeto remoto não encontrado: {object_id}: {e}") from e
        if not isinstance(document, dict):
            raise NotFoundError(f"Objeto remoto inválido: {object_id}")
        return document

    async def resolve(self, actor_id: str, refresh: bool = False) -> RemoteActor:
        if refresh:
            self.cache.invalidate(actor_id)
        cached = self.cache.get(actor_id)
        if cached:
            return cached

        remote = await self.fetch(actor_id)
        self.cache.put(remote)
        log.info(f"Actor remoto {actor_id} buscado e armazenado em cache")
        return remote

    async def upsert(self, session: AsyncSession, remote: RemoteActor) -> Actor:
        """Espelha o actor remoto no banco; actors locais nunca são sobrescritos."""
        actor = await session.get(Actor, remote.id)
        if actor is None:
            actor = Actor(id=remote.id)
            session.add(actor)
        elif actor.is_local:
            return actor

        actor.username = remote.username
        actor.domain = remote.domain
        actor.name = remote.name
        actor.summary = remote.summary
        actor.inbox_url = remote.inbox_url
        actor.shared_inbox_url = remote.shared_inbox_url
        actor.followers_url = remote.followers_url
        actor.public_key_pem = remote.public_key_pem
        actor.manually_approves_followers = remote.manually_approves_followers
        actor.fetched_at = utcnow()
        await session.flush()
        return actor

    def is_fresh(self, actor: Actor) -> bool:
        fetched_at = as_utc(actor.fetched_at)
        if fetched_at is None:
            return False
        return utcnow() - fetched_at < timedelta(seconds=settings.actor_cache_ttl)

    async def get_actor(
        self, session: AsyncSession, actor_id: str, refresh: bool = False
    ) -> Actor:
        actor = await session.get(Actor, actor_id)
        if actor is not None and (actor.is_local or (not refresh and self.is_fresh(actor))):
            return actor

        remote = await self.resolve(actor_id, refresh=refresh)
        return await self.upsert(session, remote)
