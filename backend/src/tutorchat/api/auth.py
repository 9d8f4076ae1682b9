"""
Authentication context for API endpoints.

The calling user is identified by the X-User-Id header. Every chat
resource is scoped to that user; rows owned by anyone else read as
missing so existence is never leaked.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from tutorchat.sse.hub import ChatNotifier, SSEHub


@dataclass
class AuthContext:
    """
    Authentication context for API requests.

    Attributes:
        user_id: UUID of the calling user

    Example:
        >>> @router.get("/threads/{thread_id}")
        >>> def get_thread(
        ...     thread_id: UUID,
        ...     auth: AuthContext = Depends(get_auth_context),
        ...     session: Session = Depends(get_db),
        ... ):
        ...     return ChatService(session).require_thread(auth.user_id, thread_id)
    """

    user_id: UUID


def get_auth_context(
    x_user_id: Optional[str] = Header(
        None,
        description="UUID of the calling user (required)",
        alias="X-User-Id",
    ),
) -> AuthContext:
    """
    FastAPI dependency resolving the calling user.

    Raises:
        HTTPException(401): If the header is missing
        HTTPException(400): If the header is not a UUID
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    try:
        user_id = UUID(x_user_id.strip())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid user ID format",
        )
    return AuthContext(user_id=user_id)


def get_hub(request: Request) -> SSEHub:
    """The process SSE hub, created on first use when the lifespan did not run."""
    hub = getattr(request.app.state, "sse_hub", None)
    if hub is None:
        hub = SSEHub()
        request.app.state.sse_hub = hub
    return hub


def get_notifier(request: Request) -> ChatNotifier:
    """Publish through the Redis bus when one is attached, otherwise the local hub."""
    bus = getattr(request.app.state, "sse_bus", None)
    return ChatNotifier(bus if bus is not None else get_hub(request))
