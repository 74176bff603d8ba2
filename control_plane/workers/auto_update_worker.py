import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from control_plane.core.errors import ConflictError, ControlPlaneError, NotFoundError
from control_plane.external.k8s_client import ClusterGateway
from control_plane.services.artifact_service import ArtifactService
from control_plane.services.record_store import RecordStore
from control_plane.services.status_service import parse_time
from control_plane.services.translator import ANNOTATION_IN_PROGRESS, namespace_name, object_name

logger = logging.getLogger(__name__)


class AutoUpdateWorker:
    """Balayage périodique des rollouts en auto-update.

    Un rollout n'est jamais mis à jour deux fois en parallèle: verrou par
    rollout dans le processus, et marqueur posé sur le Deployment (visible
    par les autres instances). Le worker ne persiste rien: après un crash,
    le balayage suivant repart de zéro et un marqueur orphelin expire.

    Les balayages partent à intervalle fixe: un rollout bloqué ne retarde
    pas les suivants, il est seulement ignoré tant qu'il reste en cours.
    """

    def __init__(self, record_store: RecordStore, artifact_service: ArtifactService,
                 cluster: ClusterGateway, interval_seconds: int = 60, concurrency: int = 4,
                 marker_ttl_seconds: int = 600,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.record_store = record_store
        self.artifact_service = artifact_service
        self.cluster = cluster
        self.interval_seconds = interval_seconds
        self.concurrency = max(1, concurrency)
        self.marker_ttl_seconds = marker_ttl_seconds
        self.clock = clock

        self.running = False
        self._task = None
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()
        # Dernière référence observée par rollout (information seulement)
        self.cursors: Dict[int, str] = {}
        self._sweeps: Set[asyncio.Task] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self.last_sweep_results: Dict[str, Any] = {
            "timestamp": None,
            "summary": {},
            "outcomes": [],
            "errors": [],
        }

    async def start(self):
        """Démarre la boucle: un balayage lancé à chaque intervalle, sans attendre le précédent"""
        if self.running:
            return

        self.running = True
        logger.info(f"Worker d'auto-update démarré (intervalle {self.interval_seconds}s)")

        try:
            while self.running:
                sweep = asyncio.create_task(self.run_sweep())
                self._sweeps.add(sweep)
                sweep.add_done_callback(self._reap_sweep)
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Worker d'auto-update annulé")
        finally:
            for sweep in list(self._sweeps):
                sweep.cancel()

        logger.info("Worker d'auto-update arrêté")

    def _reap_sweep(self, sweep: asyncio.Task) -> None:
        self._sweeps.discard(sweep)
        if sweep.cancelled():
            return
        error = sweep.exception()
        if error is not None:
            logger.error(f"Erreur dans le balayage d'auto-update: {error}", exc_info=error)

    def stop(self):
        """Arrête le worker"""
        self.running = False

    def is_healthy(self) -> bool:
        return self.running and self._task is not None and not self._task.done()

    # === BALAYAGE ===
    async def run_sweep(self) -> Dict[str, Any]:
        """Un passage complet sur les rollouts en auto-update"""
        started = self.clock()
        results: Dict[str, Any] = {
            "timestamp": started.isoformat(),
            "summary": {"scanned": 0, "updated": 0, "unchanged": 0, "skipped": 0, "errors": 0},
            "outcomes": [],
            "errors": [],
            "duration_seconds": 0,
        }

        try:
            rollouts = await asyncio.to_thread(self.record_store.list_auto_update_rollouts)
        except Exception as e:
            logger.error(f"Lecture des rollouts en auto-update impossible: {e}")
            results["errors"].append(str(e))
            results["summary"]["errors"] += 1
            self.last_sweep_results = results
            return results

        ids = {rollout.id for rollout in rollouts}
        for rollout_id in list(self.cursors):
            if rollout_id not in ids:
                self.cursors.pop(rollout_id, None)

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(rollout_id: int) -> Dict[str, Any]:
            # Un rollout encore traité par un balayage précédent n'occupe pas de place
            if not self._acquire(rollout_id):
                return self._already_in_progress(rollout_id)
            try:
                await self._semaphore.acquire()
            except asyncio.CancelledError:
                self._release(rollout_id)
                raise
            try:
                return await asyncio.to_thread(self._process_acquired, rollout_id)
            finally:
                self._semaphore.release()

        outcomes: List[Dict[str, Any]] = await asyncio.gather(*(guarded(r.id) for r in rollouts))

        results["summary"]["scanned"] = len(rollouts)
        for outcome in outcomes:
            status = outcome["status"]
            key = "errors" if status == "error" else status
            results["summary"][key] += 1
            if status == "error":
                results["errors"].append(f"Rollout {outcome['rollout_id']}: {outcome.get('reason')}")
        results["outcomes"] = outcomes
        results["duration_seconds"] = round((self.clock() - started).total_seconds(), 2)
        self.last_sweep_results = results

        summary = results["summary"]
        logger.info(
            f"Balayage d'auto-update: {summary['scanned']} rollout(s), {summary['updated']} mis à jour, "
            f"{summary['skipped']} ignoré(s), {summary['errors']} erreur(s)"
        )
        return results

    async def check_rollout(self, rollout_id: int) -> Dict[str, Any]:
        """Vérification manuelle d'un seul rollout"""
        # NotFoundError remonte à l'appelant
        await asyncio.to_thread(self.record_store.get_rollout, rollout_id)
        return await asyncio.to_thread(self._process, rollout_id, True)

    # === TRAITEMENT D'UN ROLLOUT ===
    def _acquire(self, rollout_id: int) -> bool:
        with self._in_flight_lock:
            if rollout_id in self._in_flight:
                return False
            self._in_flight.add(rollout_id)
            return True

    def _release(self, rollout_id: int) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(rollout_id)

    def marker_is_fresh(self, deployment: Optional[Dict[str, Any]]) -> bool:
        """Un marqueur plus vieux que le TTL est considéré comme orphelin"""
        annotations = ((deployment or {}).get("metadata") or {}).get("annotations") or {}
        marked_at = parse_time(annotations.get(ANNOTATION_IN_PROGRESS))
        if marked_at is None:
            return False
        return (self.clock() - marked_at).total_seconds() < self.marker_ttl_seconds

    def _outcome(self, rollout_id: int, status: str, **extra) -> Dict[str, Any]:
        return dict({"rollout_id": rollout_id, "status": status}, **extra)

    def _already_in_progress(self, rollout_id: int) -> Dict[str, Any]:
        logger.info(f"Rollout {rollout_id}: mise à jour déjà en cours, ignoré")
        return self._outcome(rollout_id, "skipped", reason="already in progress")

    def _process(self, rollout_id: int, manual: bool = False) -> Dict[str, Any]:
        if not self._acquire(rollout_id):
            return self._already_in_progress(rollout_id)
        return self._process_acquired(rollout_id, manual)

    def _process_acquired(self, rollout_id: int, manual: bool = False) -> Dict[str, Any]:
        """Traite un rollout déjà marqué en cours; libère le verrou en sortie"""
        try:
            return self._update_if_needed(rollout_id, manual)
        except ControlPlaneError as e:
            logger.warning(f"Rollout {rollout_id}: auto-update en échec: {e}")
            return self._outcome(rollout_id, "error", reason=str(e), error=e.code)
        except Exception as e:
            logger.exception(f"Rollout {rollout_id}: erreur inattendue pendant l'auto-update: {e}")
            return self._outcome(rollout_id, "error", reason=str(e), error="INTERNAL")
        finally:
            self._release(rollout_id)

    def _update_if_needed(self, rollout_id: int, manual: bool) -> Dict[str, Any]:
        # Relecture: la liste du balayage peut être périmée
        try:
            rollout = self.record_store.get_rollout(rollout_id)
        except NotFoundError:
            self.cursors.pop(rollout_id, None)
            return self._outcome(rollout_id, "skipped", reason="rollout deleted")
        if not rollout.auto_update and not manual:
            return self._outcome(rollout_id, "skipped", reason="auto-update disabled")

        namespace = namespace_name(rollout.project_id)
        name = object_name(rollout.id)
        deployment = self.cluster.get_object("Deployment", namespace, name)
        if self.marker_is_fresh(deployment):
            logger.info(f"Rollout {rollout_id}: marqueur de mise à jour présent sur le cluster, ignoré")
            return self._outcome(rollout_id, "skipped", reason="marked in progress")

        current = self.artifact_service.current_reference(rollout)
        latest = self.artifact_service.resolve_latest(rollout)
        self.cursors[rollout_id] = str(latest)
        if latest == current:
            return self._outcome(rollout_id, "unchanged", reference=str(current))

        if deployment is not None:
            try:
                self.cluster.patch_annotations(
                    "Deployment", namespace, name,
                    {ANNOTATION_IN_PROGRESS: self.clock().isoformat()},
                    resource_version=(deployment.get("metadata") or {}).get("resourceVersion"),
                )
            except ConflictError:
                logger.info(f"Rollout {rollout_id}: Deployment modifié entre-temps, ignoré pour ce balayage")
                return self._outcome(rollout_id, "skipped", reason="concurrent modification")

        try:
            logger.info(f"Rollout {rollout_id}: {current} -> {latest}")
            _, report = self.record_store.update_rollout(rollout_id, {"tag": latest.tag, "digest": latest.digest})
        finally:
            if deployment is not None:
                self._clear_marker(namespace, name)

        return self._outcome(
            rollout_id, "updated",
            previous=str(current),
            reference=str(latest),
            partial_error=report.error.to_dict() if report.error else None,
        )

    def _clear_marker(self, namespace: str, name: str) -> None:
        try:
            self.cluster.patch_annotations("Deployment", namespace, name, {ANNOTATION_IN_PROGRESS: None})
        except NotFoundError:
            logger.debug(f"Deployment {namespace}/{name} supprimé, plus de marqueur à retirer")
        except ControlPlaneError as e:
            # Le marqueur expirera de lui-même
            logger.warning(f"Retrait du marqueur impossible sur {namespace}/{name}: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "healthy": self.is_healthy(),
            "in_flight": sorted(self._in_flight),
            "last_sweep": self.last_sweep_results,
        }
