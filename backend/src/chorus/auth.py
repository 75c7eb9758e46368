"""Session lookup from the authenticating proxy's headers."""

from dataclasses import dataclass

from fastapi import Request

from chorus.config import settings


@dataclass(frozen=True)
class Session:
    user_id: str
    email: str | None = None
    name: str | None = None


def get_session(request: Request) -> Session | None:
    """Build the caller's session, or None when the request is anonymous.

    The proxy in front of the API sets X-User-ID (and optionally X-User-Email,
    X-User-Name). DEV_USER_ID stands in for it on local runs.
    """
    user_id = request.headers.get("x-user-id") or settings.dev_user_id
    if not user_id:
        return None
    return Session(
        user_id=user_id,
        email=request.headers.get("x-user-email"),
        name=request.headers.get("x-user-name"),
    )
