"""Current-user resolution.

Authentication is handled by the upstream session proxy, which forwards the
authenticated identity as request headers. This module only reads them.
"""
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated caller.

    Attributes:
        user_id: Opaque user ID issued by the auth provider.
        email: The user's email, when the provider shares it.
    """
    user_id: str
    email: str | None = None


def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_email: Annotated[str | None, Header()] = None,
) -> CurrentUser | None:
    """Resolve the caller, or None when the request is anonymous."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        return None
    email = (x_user_email or "").strip() or None
    return CurrentUser(user_id=user_id, email=email)


def require_user(
    user: CurrentUser | None = Depends(get_current_user),
) -> CurrentUser:
    """Like ``get_current_user`` but rejects anonymous requests with 401."""
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized"},
        )
    return user
