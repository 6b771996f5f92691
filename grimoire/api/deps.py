# grimoire/api/deps.py
from fastapi import Request

from grimoire.core.errors import Unauthorized
from grimoire.core.tokens import Principal
from grimoire.services.sessions import SessionService


def get_sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def authenticate(request: Request) -> Principal:
    """
    Gateway de autenticación: exige ``Authorization: Bearer <access token>``.

    Solo consulta al TokenIssuer (firma + exp + type=access), nunca al
    revocation store: un access token sigue valiendo tras logout-all hasta
    que caduca.
    """
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise Unauthorized()
    return request.app.state.issuer.verify_access(token.strip())
