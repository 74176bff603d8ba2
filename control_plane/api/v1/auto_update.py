from fastapi import APIRouter, Depends

from control_plane.api.schemas.rollouts import AutoUpdateResponse
from control_plane.dependencies import get_auto_update_worker
from control_plane.workers.auto_update_worker import AutoUpdateWorker

router = APIRouter(prefix="/auto-update", tags=["auto-update"])


@router.post("/{auto_update_id}", response_model=AutoUpdateResponse)
async def trigger_auto_update(
    auto_update_id: int,
    worker: AutoUpdateWorker = Depends(get_auto_update_worker)
):
    """Vérifie immédiatement un rollout et applique la nouvelle référence s'il y en a une"""
    return await worker.check_rollout(auto_update_id)
