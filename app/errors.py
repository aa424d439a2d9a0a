"""
app/errors.py

Taxonomia de erros da federação.

- ValidationError: entrada malformada; não é reprocessada (400)
- AuthorizationError: assinatura ou credencial inválida (401)
- NotFoundError: referência a actor/status inexistente
- ConsistencyConflict: mutação concorrente detectada pela versão
- RetryableDeliveryError: falha transitória na entrega; volta para a fila
- PermanentDeliveryFailure: entrega desistida; fica visível para o operador
"""


class FederationError(Exception):
    """Base de todos os erros do servidor."""


class ValidationError(FederationError):
    pass


class InvalidActionError(ValidationError):
    """Ação de domínio inválida (status/actor inexistente, visibilidade desconhecida)."""


class AuthorizationError(FederationError):
    pass


class NotFoundError(FederationError):
    pass


class ConsistencyConflict(FederationError):
    pass


class RetryableDeliveryError(FederationError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PermanentDeliveryFailure(FederationError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
