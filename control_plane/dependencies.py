from functools import lru_cache
from typing import Optional

from control_plane.config import settings
from control_plane.core.database import get_db_manager
from control_plane.external.k8s_client import K8sClient
from control_plane.external.registry_client import RegistryClient
from control_plane.services.artifact_service import ArtifactService
from control_plane.services.reconciler import ReconciliationInterceptor
from control_plane.services.record_store import RecordStore
from control_plane.services.status_service import StatusService
from control_plane.workers.auto_update_worker import AutoUpdateWorker


# === CLIENTS EXTERNES ===
@lru_cache()
def get_k8s_client() -> K8sClient:
    return K8sClient(context=settings.KUBE_CONTEXT, request_timeout=settings.KUBE_REQUEST_TIMEOUT_SECONDS)


@lru_cache()
def get_registry_client() -> RegistryClient:
    return RegistryClient(
        timeout=settings.REGISTRY_TIMEOUT_SECONDS,
        username=settings.REGISTRY_USERNAME,
        password=settings.REGISTRY_PASSWORD
    )


# === SERVICES ===
@lru_cache()
def get_interceptor() -> ReconciliationInterceptor:
    """Hooks pré-commit du record store"""
    return ReconciliationInterceptor(get_k8s_client())


@lru_cache()
def get_record_store() -> RecordStore:
    return RecordStore(get_db_manager().session_factory, get_interceptor())


@lru_cache()
def get_status_service() -> StatusService:
    return StatusService(
        cluster=get_k8s_client(),
        record_store=get_record_store(),
        grace_seconds=settings.ROLLOUT_GRACE_SECONDS,
        events_limit=settings.EVENTS_LIMIT,
        cache_ttl=settings.STATUS_CACHE_TTL_SECONDS
    )


@lru_cache()
def get_artifact_service() -> ArtifactService:
    return ArtifactService(get_registry_client())


# === WORKERS ===
_auto_update_worker_instance: Optional[AutoUpdateWorker] = None


def get_auto_update_worker() -> AutoUpdateWorker:
    """Factory pour le worker d'auto-update (singleton)"""
    global _auto_update_worker_instance
    if _auto_update_worker_instance is None:
        _auto_update_worker_instance = AutoUpdateWorker(
            record_store=get_record_store(),
            artifact_service=get_artifact_service(),
            cluster=get_k8s_client(),
            interval_seconds=settings.AUTO_UPDATE_INTERVAL_SECONDS,
            concurrency=settings.AUTO_UPDATE_CONCURRENCY,
            marker_ttl_seconds=settings.AUTO_UPDATE_MARKER_TTL_SECONDS
        )
    return _auto_update_worker_instance
