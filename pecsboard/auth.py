from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from fastapi import Header


@dataclass(frozen=True)
class Caller:
    user_id: Optional[str]
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


ANONYMOUS = Caller(user_id=None)


class Authorizer(Protocol):
    def is_admin(self, user_id: str, email: Optional[str] = None) -> bool:
        ...


class SettingsAuthorizer:
    """Admins are listed by user id or by (case-insensitive) email."""

    def __init__(self, user_ids: Iterable[str] = (), emails: Iterable[str] = ()) -> None:
        self.user_ids = frozenset(user_ids)
        self.emails = frozenset(e.lower() for e in emails)

    def is_admin(self, user_id: str, email: Optional[str] = None) -> bool:
        if user_id in self.user_ids:
            return True
        return bool(email) and email.lower() in self.emails


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the caller id carried by an ``Authorization`` header.

    The bearer token is treated as the user identifier; verifying it is the
    identity provider's job, upstream of this service.
    """
    if not authorization:
        return None
    prefix = "bearer "
    if not authorization.lower().startswith(prefix):
        return None
    user_id = authorization[len(prefix) :].strip()
    return user_id or None


def get_caller(
    authorization: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> Caller:
    user_id = parse_bearer(authorization)
    if user_id is None:
        return ANONYMOUS
    return Caller(
        user_id=user_id,
        email=x_user_email.strip().lower() if x_user_email else None,
        display_name=x_user_name.strip() if x_user_name else None,
    )
