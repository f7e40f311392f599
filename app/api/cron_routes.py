"""Metricpipe — Cron Trigger Routes.

For deployments where an external cron calls in instead of the
in-process scheduler.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlmodel import Session

from app.config import settings
from app.database import get_session
from app.scheduler.jobs import poll_due_metrics
from app.core.logging import get_logger

logger = get_logger("api.cron")

router = APIRouter(prefix="/cron", tags=["Cron"])


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Dependency — requires ``Bearer <CRON_SECRET>`` when a secret is configured."""
    if not settings.cron_secret:
        return
    if authorization != f"Bearer {settings.cron_secret}":
        logger.warning("Rejected cron call with bad credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/poll-metrics", dependencies=[Depends(verify_cron_secret)])
async def poll_metrics(session: Session = Depends(get_session)):
    """Start soft refreshes for all metrics due for polling."""
    return poll_due_metrics(session)
