"""Request identity.

Session validation happens in the auth gateway in front of this service; it
forwards the authenticated user and active tenant as headers.
"""

from abc import ABC, abstractmethod
from typing import Optional

from fastapi import HTTPException, Request
from pydantic import BaseModel

from coach_chatbot.exceptions import AccessError

USER_HEADER = "X-User-Id"
TENANT_HEADER = "X-Tenant-Id"


class Identity(BaseModel):
    user_id: str
    tenant_id: str


class IdentityProvider(ABC):
    @abstractmethod
    def resolve(self, request: Request) -> Identity:
        """Return the caller's identity or raise ``AccessError``."""


class HeaderIdentityProvider(IdentityProvider):
    def resolve(self, request: Request) -> Identity:
        user_id: Optional[str] = request.headers.get(USER_HEADER)
        tenant_id: Optional[str] = request.headers.get(TENANT_HEADER)
        if not user_id:
            raise AccessError("Unauthorized", status_code=401)
        if not tenant_id:
            raise AccessError("No active organization")
        return Identity(user_id=user_id, tenant_id=tenant_id)


def get_identity(request: Request) -> Identity:
    provider: IdentityProvider = getattr(
        request.app.state, "identity_provider", None
    ) or HeaderIdentityProvider()
    try:
        return provider.resolve(request)
    except AccessError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
