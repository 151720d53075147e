from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from crm_api.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    email: str | None = None
    full_name: str | None = None


def extract_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def decode_access_token(token: str) -> dict[str, Any] | None:
    if not token:
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


def login_required_error(request: Request) -> HTTPException:
    settings = get_settings()
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "message": "authentication required",
            "redirect_to": settings.login_path,
            "next": request.url.path,
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_access_token(extract_bearer_token(request))
    if payload is None:
        raise login_required_error(request)

    subject = str(payload["sub"])
    if getattr(request.state, "context", None) is not None:
        request.state.context.user_id = subject
    email = payload.get("email")
    full_name = payload.get("name") or payload.get("full_name")
    return AuthUser(
        sub=subject,
        email=str(email) if email else None,
        full_name=str(full_name) if full_name else None,
    )
