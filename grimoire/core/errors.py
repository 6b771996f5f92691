# grimoire/core/errors.py
"""
Taxonomía de errores del core de autenticación.

Cada clase lleva su ``status_code``; los handlers de FastAPI (grimoire.main)
las traducen a ``{"error": message}``. Los fallos de infraestructura heredan
de ``Internal`` y nunca se convierten en ``Unauthorized``.
"""


class GrimoireError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, details=None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationFailed(GrimoireError):
    status_code = 400
    default_message = "Validation failed"


class Unauthorized(GrimoireError):
    status_code = 401
    default_message = "Unauthorized"


class NotFound(GrimoireError):
    status_code = 404
    default_message = "Not Found"


class Conflict(GrimoireError):
    status_code = 409
    default_message = "Conflict"


class RotationConflict(Conflict):
    """El refresh token ya no estaba activo al ejecutar la rotación."""

    default_message = "Refresh token is no longer active"


class Internal(GrimoireError):
    status_code = 500


class StoreUnavailable(Internal):
    default_message = "Token store unavailable"
