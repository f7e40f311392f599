"""Metricpipe — Pipeline API Routes."""

from typing import List, Optional

from fastapi import APIRouter, Body, Depends
from sqlmodel import Session

from app.core.auth import Workspace, get_workspace
from app.database import get_session
from app.models.pipeline_models import (
    ProgressResponse,
    RegenerateChartRequest,
    StartedResponse,
    TransformerInfo,
)
from app.pipeline import orchestrator
from app.core.logging import get_logger

logger = get_logger("api.pipeline")

router = APIRouter(prefix="/pipeline", tags=["Pipeline"])


# ── Mutations ──


@router.post("/{metric_id}/refresh", response_model=StartedResponse)
async def refresh(
    metric_id: str,
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    """Soft refresh — reuse transformers, fetch fresh data, update charts."""
    return orchestrator.refresh(session, metric_id, workspace.organization_id)


@router.post("/{metric_id}/regenerate", response_model=StartedResponse)
async def regenerate(
    metric_id: str,
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    """Hard refresh — delete data and transformers, regenerate from scratch."""
    return orchestrator.regenerate(session, metric_id, workspace.organization_id)


@router.post("/{metric_id}/regenerate-ingestion", response_model=StartedResponse)
async def regenerate_ingestion(
    metric_id: str,
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    """Regenerate only the ingestion transformer and re-ingest."""
    return orchestrator.regenerate_ingestion_only(session, metric_id, workspace.organization_id)


@router.post("/{metric_id}/regenerate-chart", response_model=StartedResponse)
async def regenerate_chart(
    metric_id: str,
    request: Optional[RegenerateChartRequest] = Body(default=None),
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    """Regenerate only the chart transformer, optionally overriding type, cadence or dimension."""
    return orchestrator.regenerate_chart_only(
        session, metric_id, workspace.organization_id, request
    )


# ── Queries ──


@router.get("/{metric_id}/progress", response_model=ProgressResponse)
async def get_progress(
    metric_id: str,
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    """Polling endpoint for the current run's step timeline."""
    return orchestrator.get_progress(session, metric_id, workspace.organization_id)


@router.get("/{metric_id}/dimensions", response_model=List[str])
async def get_available_dimensions(
    metric_id: str,
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    return orchestrator.get_available_dimensions(session, metric_id, workspace.organization_id)


@router.get("/{metric_id}/transformers", response_model=TransformerInfo)
async def get_transformer_info(
    metric_id: str,
    workspace: Workspace = Depends(get_workspace),
    session: Session = Depends(get_session),
):
    return orchestrator.get_transformer_info(session, metric_id, workspace.organization_id)
