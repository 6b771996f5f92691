# grimoire/api/auth.py
from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, EmailStr, Field, field_validator

from grimoire.api.deps import authenticate, get_sessions
from grimoire.core.tokens import Principal
from grimoire.services.sessions import SessionService
from grimoire.services.users import MAX_PASSWORD_BYTES

router = APIRouter()


def _check_password_bytes(v: str) -> str:
    if len(v.encode()) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return v


class RegisterInput(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)

    @field_validator("password")
    @classmethod
    def _bcrypt_limit(cls, v: str) -> str:
        return _check_password_bytes(v)


class LoginInput(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @field_validator("password")
    @classmethod
    def _bcrypt_limit(cls, v: str) -> str:
        return _check_password_bytes(v)


class RefreshInput(BaseModel):
    refreshToken: str = Field(min_length=1)


def _auth_body(result) -> dict:
    return {
        "user": result.user.public(),
        "accessToken": result.access_token,
        "refreshToken": result.refresh_token,
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(body: RegisterInput, sessions: SessionService = Depends(get_sessions)):
    result = await sessions.register(body.email, body.password)
    return _auth_body(result)


@router.post("/login")
async def login(body: LoginInput, sessions: SessionService = Depends(get_sessions)):
    result = await sessions.login(body.email, body.password)
    return _auth_body(result)


@router.post("/refresh")
async def refresh(body: RefreshInput, sessions: SessionService = Depends(get_sessions)):
    pair = await sessions.refresh(body.refreshToken)
    return {"accessToken": pair.access_token, "refreshToken": pair.refresh_token}


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(body: RefreshInput, sessions: SessionService = Depends(get_sessions)):
    await sessions.logout(body.refreshToken)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout-all", status_code=status.HTTP_204_NO_CONTENT)
async def logout_all(
    principal: Principal = Depends(authenticate),
    sessions: SessionService = Depends(get_sessions),
):
    await sessions.logout_all(principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me")
async def me(principal: Principal = Depends(authenticate)):
    return {"user": {"id": principal.id, "email": principal.email, "role": principal.role}}


@router.get("/sessions")
async def list_sessions(
    principal: Principal = Depends(authenticate),
    sessions: SessionService = Depends(get_sessions),
):
    rows = await sessions.list_sessions(principal)
    return {
        "sessions": [
            {
                "tokenId": r.token_id,
                "expiresAt": r.expires_at.isoformat(),
                "revokedAt": r.revoked_at.isoformat() if r.revoked_at else None,
            }
            for r in rows
        ]
    }
