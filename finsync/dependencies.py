"""FastAPI dependencies for the sync API."""

from fastapi import Header, HTTPException, Request, status

from finsync.services.sync_engine import DataSyncEngine


def get_sync_engine(request: Request) -> DataSyncEngine:
    """Return the engine created in the application lifespan."""
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not running",
        )
    return engine


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """
    Read the caller's user id.

    Token validation happens at the gateway in front of this service, which
    forwards the authenticated user's id in the ``X-User-Id`` header.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user id",
        )
    return x_user_id.strip()
