from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from apkit.server.types import ActorKey

from app.models.actor import Actor


def generate_key_pair(key_size: int = 2048) -> tuple[str, str]:
    """Gera um par RSA e devolve (private_pem, public_pem)."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

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


def load_private_key(private_key_pem: str):
    return serialization.load_pem_private_key(private_key_pem.encode(), password=None)


def get_keys_for_actor(actor: Actor) -> list[ActorKey]:
    """
    Retorna a(s) chave(s) de assinatura de um actor local.
    Actors remotos não têm chave privada: lista vazia.
    """
    if not actor.is_local:
        return []
    return [ActorKey(key_id=actor.key_id, private_key=load_private_key(actor.private_key_pem))]
