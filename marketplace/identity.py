"""
Marketplace — 呼び出し元の識別

前段の認証ゲートウェイがトークンを検証し、呼び出し元を
X-User-Id / X-User-Role ヘッダーで転送してくる。
リクエストごとに一度だけ解決し、ワークフローへ明示的に渡す。
"""

from enum import Enum

from fastapi import Header
from pydantic import BaseModel, ConfigDict

from .errors import AuthorizationError


class Role(str, Enum):
    FARMER = "FARMER"
    CONSUMER = "CONSUMER"
    DELIVERY_PARTNER = "DELIVERY_PARTNER"
    ADMIN = "ADMIN"


class Caller(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


async def resolve_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    if not x_user_id or not x_user_role:
        raise AuthorizationError("Missing caller identity")
    try:
        role = Role(x_user_role.strip().upper())
    except ValueError:
        raise AuthorizationError(f"Unknown role: {x_user_role}") from None
    return Caller(user_id=x_user_id, role=role)
