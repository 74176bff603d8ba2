from fastapi import FastAPI
import uvicorn
import asyncio
import logging
from contextlib import asynccontextmanager

from control_plane.api.middleware import setup_middlewares
from control_plane.api.router import router
from control_plane.config import settings
from control_plane.core.database import get_db_manager
from control_plane.core.logging import setup_logging
from control_plane.dependencies import get_auto_update_worker


setup_logging(level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Démarrage de l'application...")

    if settings.AUTO_CREATE_TABLES:
        get_db_manager().create_tables()

    app.state.worker = None
    app.state.worker_task = None

    if settings.AUTO_UPDATE_ENABLED:
        try:
            worker = get_auto_update_worker()
            worker_task = asyncio.create_task(worker.start())
            worker._task = worker_task
            app.state.worker = worker
            app.state.worker_task = worker_task
            logger.info("Worker d'auto-update démarré en arrière-plan")

        except Exception as e:
            logger.error(f"Erreur au démarrage du worker: {e}")
    else:
        logger.info("Auto-update désactivé")

    yield

    logger.info("Arrêt de l'application...")

    if app.state.worker:
        app.state.worker.stop()

        if app.state.worker_task:
            app.state.worker_task.cancel()
            try:
                await asyncio.wait_for(app.state.worker_task, timeout=10.0)
                logger.info("Worker arrêté proprement")
            except (asyncio.CancelledError, asyncio.TimeoutError):
                logger.warning("Worker forcé à s'arrêter (timeout ou annulation)")

    logger.info("Application arrêtée proprement")

app = FastAPI(
    title=settings.APP_NAME,
    description="Control-plane de déploiement: projets et rollouts réconciliés sur Kubernetes",
    version="1.0.0",
    lifespan=lifespan
)

setup_middlewares(app)
app.include_router(router)


if __name__ == "__main__":
    url = "http://localhost:8000/docs"
    logger.info(f"{settings.APP_NAME} démarrée, documentation: {url}")
    uvicorn.run("control_plane.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
