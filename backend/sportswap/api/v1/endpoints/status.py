"""
Status and health check endpoints.

WHAT: Health monitoring for the database and change feed
WHY: Quick diagnostics for frontend and ops
HOW: FastAPI endpoint calling the DB ping
"""

from fastapi import APIRouter

from ....core.config import settings
from ....core.database import ping_database
from ....core.feed import change_feed
from ....models.api_schemas import StatusResponse
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/status", response_model=StatusResponse)
async def app_status():
    """
    Overall application health check.

    Returns:
        JSON with database status and the number of live feed channels
    """
    db_status = ping_database()
    if not db_status["available"]:
        logger.warning(f"Status check: database unavailable ({db_status['error']})")

    return StatusResponse(
        status="healthy" if db_status["available"] else "degraded",
        version=settings.APP_VERSION,
        app_name=settings.APP_NAME,
        database=db_status,
        active_channels=len(change_feed.active_channels)
    )
