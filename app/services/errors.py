"""
Errores del motor de conciliación
app/services/errors.py

Solo los errores de validación (entrada inválida, categoría inactiva,
miembro ajeno a la organización, recurso inexistente) se lanzan como
excepción, antes de cualquier mutación. Las negativas de negocio
(cuota duplicada, tope anual, cuota ya pagada en bulk) viajan como
resultado, nunca como excepción.
"""


class LedgerError(Exception):
    """Base de errores del ledger."""
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class LedgerValidationError(LedgerError):
    status_code = 400


class LedgerNotFound(LedgerError):
    status_code = 404


class LedgerForbidden(LedgerError):
    status_code = 403


class LedgerUnauthorized(LedgerError):
    status_code = 401


class LedgerGatewayError(LedgerError):
    """La pasarela no respondió o rechazó la operación."""
    status_code = 502
