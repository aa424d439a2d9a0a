from apkit.models import CryptographicKey, Person

from app.config import settings
from app.models.actor import Actor


def local_actor_url(username: str) -> str:
    return f"https://{settings.domain}/users/{username}"


def build_actor(actor: Actor) -> Person:
    """Documento ActivityPub de um actor local."""
    return Person(
        id=actor.id,
        name=actor.name,
        preferredUsername=actor.username,
        summary=actor.summary,
        inbox=actor.inbox_url,
        outbox=f"{actor.id}/outbox",
        followers=actor.followers_url,
        publicKey=CryptographicKey(
            id=actor.key_id,
            owner=actor.id,
            publicKeyPem=actor.public_key_pem,
        ),
        manuallyApprovesFollowers=actor.manually_approves_followers,
    )


def new_local_actor(
    username: str,
    public_key_pem: str,
    private_key_pem: str,
    name: str = "",
    summary: str = "",
    manually_approves_followers: bool = False,
) -> Actor:
    actor_url = local_actor_url(username)
    return Actor(
        id=actor_url,
        username=username,
        domain=settings.domain,
        name=name or username,
        summary=summary,
        inbox_url=f"{actor_url}/inbox",
        shared_inbox_url=f"https://{settings.domain}/inbox",
        followers_url=f"{actor_url}/followers",
        public_key_pem=public_key_pem,
        private_key_pem=private_key_pem,
        manually_approves_followers=manually_approves_followers,
    )
