"""Shared dependencies for admin routers."""
from fastapi import HTTPException, Request

ADMIN_USER_HEADER = "X-Admin-User-Id"


async def require_admin_user(request: Request) -> str:
    """
    Returns the admin actor_id forwarded by the authenticating proxy.

    Authentication happens upstream; this service only trusts the header
    the proxy sets. No header -> 401.
    """
    actor_id = request.headers.get(ADMIN_USER_HEADER, "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return actor_id


async def get_db(request: Request):
    """Get an SA AsyncSession from app state's session factory."""
    factory = getattr(request.app.state, "db_session_factory", None)
    if factory is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    async with factory() as session:
        yield session
