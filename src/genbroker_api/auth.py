from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from genbroker.errors import ErrorContext, SessionRequiredError
from genbroker.ledger import Owner

from .settings import ApiSettings


@dataclass(frozen=True)
class RequestIdentity:
    """Who is calling: the anonymous session and, once signed in, the user."""

    session_id: str | None = None
    user_id: str | None = None

    @property
    def guest(self) -> Owner | None:
        return Owner.guest(self.session_id) if self.session_id else None

    @property
    def registered(self) -> Owner | None:
        return Owner.registered(self.user_id) if self.user_id else None

    @property
    def owner(self) -> Owner:
        """The account requests are billed to. A signed-in user wins over the session."""
        if self.session_id is None:
            raise SessionRequiredError(context=ErrorContext(operation="resolve_owner"))
        return self.registered or self.guest


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def read_identity(request: Request, settings: ApiSettings) -> RequestIdentity:
    session_id = None
    for name in settings.session_cookie_names:
        session_id = _clean(request.cookies.get(name))
        if session_id:
            break
    if session_id is None:
        session_id = _clean(request.headers.get(settings.session_header))
    return RequestIdentity(
        session_id=session_id,
        user_id=_clean(request.headers.get(settings.user_header)),
    )


def resolve_owner(request: Request, settings: ApiSettings) -> Owner:
    """
    Owner for a request.

    Raises:
        SessionRequiredError: Neither a session nor a user id was presented
    """
    return read_identity(request, settings).owner
