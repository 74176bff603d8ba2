from fastapi import APIRouter
from control_plane.api.v1 import auto_update, projects, rollouts
from control_plane.config import settings
from control_plane.dependencies import get_auto_update_worker

router = APIRouter()

router.include_router(projects.router, prefix="/api/v1")
router.include_router(rollouts.router)
router.include_router(auto_update.router)

@router.get("/")
async def root():
    return {
        "message": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs",
        "records": "/api/v1/projects"
    }

@router.get("/health")
async def health():
    return {"status": "healthy"}

@router.get("/worker/status")
async def worker_status():
    if not settings.AUTO_UPDATE_ENABLED:
        return {"running": False, "healthy": False, "status": "disabled"}

    try:
        worker = get_auto_update_worker()
    except Exception as e:
        # Typiquement: configuration Kubernetes absente
        return {
            "running": False,
            "healthy": False,
            "error": str(e),
            "status": "error"
        }

    status = worker.get_status()
    status["status"] = "healthy" if status["healthy"] else "unhealthy"
    return status
