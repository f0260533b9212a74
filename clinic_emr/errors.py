"""
Eccezioni di dominio.

Derivano tutte da ValueError: i servizi sollevano, l'API traduce in HTTPException.
"""
from __future__ import annotations


class ClinicError(ValueError):
    """Errore applicativo generico (400)."""


class NotFoundError(ClinicError):
    pass


class InvalidTransitionError(ClinicError):
    """Cambio di stato non ammesso (es. ticket già servito)."""


class PaymentRequiredError(ClinicError):
    pass


class CouponError(ClinicError):
    pass


class AIAccessDeniedError(ClinicError):
    def __init__(self, reason: str, usage: int | None = None, limit: int | None = None) -> None:
        super().__init__(reason)
        self.usage = usage
        self.limit = limit


class GatewayError(ClinicError):
    """Risposta non valida dal gateway AI; status_code è quello da restituire al client."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code
