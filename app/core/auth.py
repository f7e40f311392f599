"""Metricpipe — Workspace Access.

Organization membership is established upstream; requests carry the
caller's organization in ``X-Organization-Id``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException
from sqlmodel import Session

from app.models.metric_models import Metric


@dataclass
class Workspace:
    organization_id: str
    team_id: Optional[str] = None


def get_workspace(
    x_organization_id: str = Header(..., alias="X-Organization-Id"),
    x_team_id: Optional[str] = Header(None, alias="X-Team-Id"),
) -> Workspace:
    """Dependency — resolves the caller's workspace from request headers."""
    if not x_organization_id.strip():
        raise HTTPException(status_code=401, detail="Missing organization")
    return Workspace(organization_id=x_organization_id, team_id=x_team_id)


def get_metric_and_verify_access(
    session: Session, metric_id: str, organization_id: str
) -> Metric:
    """Load a metric owned by the organization. Other orgs' metrics are reported as missing."""
    metric = session.get(Metric, metric_id)
    if metric is None or metric.organization_id != organization_id:
        raise HTTPException(status_code=404, detail="Metric not found")
    return metric
