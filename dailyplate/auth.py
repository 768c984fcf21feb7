from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from fastapi import Request

from .errors import Unauthenticated, Forbidden
from .model.store import OrderStore

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# ----------------------------
# Auth provider interface
# ----------------------------
class AuthProvider(ABC):
    # returns the user id behind a session token, None if invalid
    @abstractmethod
    async def user_id(self, token: str) -> Optional[str]: ...


class RemoteAuth(AuthProvider):
    """Validates bearer tokens against the hosted auth service
    (GET {auth_url}/auth/v1/user)."""

    def __init__(self, http: httpx.AsyncClient, auth_url: str,
                 anon_key: str = "") -> None:
        self.http = http
        self.auth_url = auth_url.rstrip("/")
        self.anon_key = anon_key

    async def user_id(self, token: str) -> Optional[str]:
        try:
            r = await self.http.get(
                f"{self.auth_url}/auth/v1/user",
                headers={
                    "apikey": self.anon_key,
                    "Authorization": f"Bearer {token}",
                },
            )
        except httpx.HTTPError as e:
            logger.warning("auth.lookup_failed", error=str(e))
            return None
        if r.status_code != 200:
            return None
        try:
            data = r.json()
        except ValueError:
            return None
        uid = data.get("id") if isinstance(data, dict) else None
        return str(uid) if uid else None


class DisabledAuth(AuthProvider):
    # AUTH_URL not configured: every token is rejected
    async def user_id(self, token: str) -> Optional[str]:
        return None


def bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    return header[7:].strip() if header.startswith("Bearer ") else ""


async def authenticate(request: Request, auth: AuthProvider) -> CurrentUser:
    token = bearer_token(request)
    if not token:
        raise Unauthenticated("not authenticated (missing Bearer token)")
    uid = await auth.user_id(token)
    if not uid:
        raise Unauthenticated("invalid session")
    return CurrentUser(id=uid)


async def authenticate_admin(request: Request, auth: AuthProvider,
                             store: OrderStore) -> CurrentUser:
    user = await authenticate(request, auth)
    role = await store.get_role(user.id)
    if role != ADMIN_ROLE:
        raise Forbidden("admin permission required")
    return CurrentUser(id=user.id, role=role)
