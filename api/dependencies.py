"""
FastAPI dependencies — current user from the bearer token, shared clients.

Tokens are issued by the auth service; here we only verify them.
A request without an Authorization header is anonymous.
"""

import uuid
from dataclasses import dataclass

import jwt
from fastapi import Depends, Request

from config import settings
from models.enums import UserRole
from services.errors import Forbidden, Unauthenticated
from services.gateway import TinkoffGateway
from services.notifier import Notifier


@dataclass(frozen=True)
class CurrentUser:
    id: uuid.UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def decode_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return CurrentUser(
            id=uuid.UUID(str(payload["sub"])),
            role=UserRole(payload.get("role", UserRole.USER.value)),
        )
    except (jwt.PyJWTError, KeyError, ValueError) as e:
        raise Unauthenticated("Недействительный токен") from e


async def get_current_user(request: Request) -> CurrentUser | None:
    header = request.headers.get("Authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthenticated("Недействительный токен")
    return decode_token(token.strip())


async def require_user(user: CurrentUser | None = Depends(get_current_user)) -> CurrentUser:
    if user is None:
        raise Unauthenticated("Требуется авторизация")
    return user


async def require_admin(user: CurrentUser = Depends(require_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Доступ только для администратора")
    return user


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_gateway(request: Request) -> TinkoffGateway:
    return request.app.state.gateway
