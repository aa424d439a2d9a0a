"""
app/activitypub/signature.py

Verificação de HTTP Signatures (draft-cavage, rsa-sha256) no inbox, sobre
o `Verifier` do apsig (o mesmo que o apkit usa no InboxVerifier).

A assinatura das entregas fica a cargo do ActivityPubClient do apkit
(`sign_with=["draft-cavage"]`), ver app/services/delivery.py.
"""

from typing import Mapping

from apsig.draft import Verifier
from apsig.exceptions import SignatureError

from app.config import settings
from app.errors import AuthorizationError

CONTENT_TYPE = "application/activity+json"


def key_owner(key_id: str) -> str:
    """`https://x/users/a#main-key` → `https://x/users/a`"""
    return key_id.split("#", 1)[0]


def has_signature(headers: Mapping[str, str]) -> bool:
    return any(name.lower() == "signature" for name in headers.keys())


def verify_request(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: bytes,
    public_key_pem: str,
) -> str:
    """
    Verifica a assinatura de uma requisição recebida: digest do corpo,
    assinatura sobre os headers declarados e janela do header Date.
    Retorna o keyId em caso de sucesso; levanta AuthorizationError caso contrário.
    """
    if not has_signature(headers):
        raise AuthorizationError("Header Signature ausente")
    try:
        key_id = Verifier(
            public_key_pem,
            method,
            path,
            dict(headers.items()),
            body,
            clock_skew=settings.signature_max_skew,
        ).verify(raise_on_fail=True)
    except SignatureError as e:
        raise AuthorizationError(f"Assinatura inválida: {e}") from e
    except (KeyError, ValueError) as e:
        # Header Signature malformado, base64 ou Date ilegíveis
        raise AuthorizationError(f"Header Signature malformado: {e}") from e

    if not key_id:
        raise AuthorizationError("Assinatura inválida")
    return key_id
