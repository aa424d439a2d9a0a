"""
app/activitypub/handlers.py

Registra as rotas de inbox no servidor apkit.

- POST /inbox                   → inbox compartilhada
- POST /users/{username}/inbox  → inbox pessoal

As duas passam pelo mesmo InboxProcessor. Respostas:
- 202 atividade aceita (inclusive no-ops idempotentes)
- 400 payload inválido ou tipo desconhecido
- 401 assinatura ausente ou inválida
- 503 conflito de concorrência persistente (o remoto deve tentar de novo)
"""

import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.errors import AuthorizationError, ConsistencyConflict, ValidationError
from app.services.inbound import InboxProcessor

log = logging.getLogger(__name__)


def register_handlers(app, processor: InboxProcessor) -> None:
    """
    Registra as inboxes no servidor apkit.
    Chamado em main.py após criar a instância ActivityPubServer.
    """

    async def receive(request: Request) -> Response:
        body = await request.body()
        try:
            outcome = await processor.receive(
                request.method, request.url.path, request.headers, body
            )
        except AuthorizationError as e:
            log.warning(f"Atividade rejeitada (401): {e}")
            return JSONResponse({"error": str(e)}, status_code=401)
        except ValidationError as e:
            log.warning(f"Atividade rejeitada (400): {e}")
            return JSONResponse({"error": str(e)}, status_code=400)
        except ConsistencyConflict as e:
            log.error(f"Atividade não aplicada (503): {e}")
            return JSONResponse({"error": str(e)}, status_code=503)

        log.debug(f"Atividade processada: {outcome}")
        return Response(status_code=202)

    @app.post("/inbox")
    async def shared_inbox(request: Request):
        return await receive(request)

    @app.post("/users/{username}/inbox")
    async def actor_inbox(username: str, request: Request):
        return await receive(request)
