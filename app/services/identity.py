"""
app/services/identity.py

Interface do provedor de identidade consumido pelas ações de domínio.

O servidor OAuth não faz parte deste projeto: um `IdentityProvider` só precisa
resolver um bearer opaco para (actor local, escopos). Escopos seguem o
formato "read" / "write", com subescopos "write:statuses" etc.
"""

from dataclasses import dataclass, field
from typing import Protocol

from app.errors import AuthorizationError

READ = "read"
WRITE = "write"


@dataclass(frozen=True)
class Identity:
    actor_id: str
    scopes: frozenset[str] = field(default_factory=lambda: frozenset({READ, WRITE}))

    def allows(self, scope: str) -> bool:
        # "write" cobre "write:statuses", "write:follows", ...
        return scope in self.scopes or scope.split(":", 1)[0] in self.scopes


class IdentityProvider(Protocol):
    async def identify(self, token: str) -> Identity | None: ...


class StaticIdentityProvider:
    """Tokens fixos em memória (scripts de operação e testes)."""

    def __init__(self, tokens: dict[str, Identity] | None = None):
        self.tokens = dict(tokens or {})

    async def identify(self, token: str) -> Identity | None:
        return self.tokens.get(token)


def require_scope(identity: Identity | None, scope: str) -> Identity:
    if identity is None:
        raise AuthorizationError("Credencial ausente ou inválida")
    if not identity.allows(scope):
        raise AuthorizationError(f"Escopo {scope!r} não concedido")
    return identity


async def authorize(provider: IdentityProvider, token: str | None, scope: str) -> Identity:
    identity = await provider.identify(token) if token else None
    return require_scope(identity, scope)
