"""
Who is calling. Sessions are owned by the identity provider in front of this
service; it forwards the authenticated user id in a request header.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    email: Optional[str] = None


class SessionProvider(ABC):
    @abstractmethod
    def get_current_user(self, request: Request) -> Optional[SessionUser]:
        """The authenticated caller, or None when the request carries no session."""


class HeaderSessionProvider(SessionProvider):
    def __init__(self, user_header: str = "X-User-Id", email_header: str = "X-User-Email"):
        self.user_header = user_header
        self.email_header = email_header

    def get_current_user(self, request: Request) -> Optional[SessionUser]:
        user_id = (request.headers.get(self.user_header) or "").strip()
        if not user_id:
            return None
        return SessionUser(user_id=user_id, email=request.headers.get(self.email_header))


session_provider: SessionProvider = HeaderSessionProvider()


def current_user(request: Request) -> Optional[SessionUser]:
    return session_provider.get_current_user(request)


def require_user(request: Request) -> SessionUser:
    user = current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="User not authenticated")
    return user
