"""
FastAPI Dependencies - Access to the long-lived grant engine.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import HTTPException, Request, status

from benefit_grant.services.grant_engine import GrantEngine


def get_grant_engine(request: Request) -> GrantEngine:
    """
    Return the engine created by the application lifespan.

    Raises:
        HTTPException: 503 if the application has not finished starting
    """
    engine: GrantEngine | None = getattr(request.app.state, "grant_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Grant engine is not running",
        )
    return engine