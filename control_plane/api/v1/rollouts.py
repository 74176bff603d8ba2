from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from typing import List, Optional
import asyncio
import logging

from control_plane.api.schemas.rollouts import (
    EventResponse,
    RolloutMetricsResponse,
    RolloutStatusResponse,
)
from control_plane.config import settings
from control_plane.dependencies import get_status_service
from control_plane.services.status_service import StatusService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rollouts", tags=["rollouts"])


@router.get("/{project_id}/{rollout_id}/status", response_model=RolloutStatusResponse)
def get_rollout_status(
    project_id: int,
    rollout_id: int,
    status_service: StatusService = Depends(get_status_service)
):
    """Phase de santé agrégée du rollout"""
    return status_service.get_status(project_id, rollout_id)


@router.get("/{project_id}/{rollout_id}/metrics", response_model=RolloutMetricsResponse)
def get_rollout_metrics(
    project_id: int,
    rollout_id: int,
    status_service: StatusService = Depends(get_status_service)
):
    """CPU et mémoire instantanés des pods du rollout"""
    return status_service.get_metrics(project_id, rollout_id)


@router.get("/{project_id}/{rollout_id}/events", response_model=List[EventResponse])
def get_rollout_events(
    project_id: int,
    rollout_id: int,
    status_service: StatusService = Depends(get_status_service)
):
    """Événements récents, du plus ancien au plus récent"""
    return status_service.get_events(project_id, rollout_id)


@router.get("/{project_id}/{pod_name}/logs")
async def get_pod_logs(
    project_id: int,
    pod_name: str,
    follow: bool = False,
    tail_lines: Optional[int] = Query(None, ge=1),
    status_service: StatusService = Depends(get_status_service)
):
    """Logs d'un pod en texte brut; en mode follow le flux reste ouvert.

    Le flux est fermé à la déconnexion du client, en fin de logs ou à
    l'expiration de LOG_FOLLOW_TIMEOUT_SECONDS.
    """
    stream = await run_in_threadpool(
        status_service.open_logs,
        project_id,
        pod_name,
        follow,
        tail_lines or settings.LOG_TAIL_LINES,
    )

    async def lines():
        # close() débloque une lecture en attente dans le threadpool
        timer = None
        if follow:
            timer = asyncio.get_running_loop().call_later(settings.LOG_FOLLOW_TIMEOUT_SECONDS, stream.close)
        try:
            while True:
                line = await run_in_threadpool(next, stream, None)
                if line is None:
                    break
                yield line + "\n"
        finally:
            if timer is not None:
                timer.cancel()
            stream.close()
            logger.debug(f"Flux de logs fermé pour {project_id}/{pod_name}")

    return StreamingResponse(lines(), media_type="text/plain; charset=utf-8")
