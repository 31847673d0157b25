from fastapi import APIRouter
from playdeck.core.config import get_settings

settings_conf = get_settings()
router = APIRouter()


@router.get("/healthz")
async def health_check():
    """Health check endpoint for Docker and monitoring.

    Returns:
        Status and version information.
    """
    return {"status": "ok", "version": settings_conf.VERSION}
