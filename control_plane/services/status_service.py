from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from kubernetes.utils import parse_quantity

from control_plane.core.cache import TTLCache
from control_plane.core.errors import ControlPlaneError, NotFoundError
from control_plane.external.k8s_client import ClusterGateway, LogStream
from control_plane.services.record_store import RecordStore
from control_plane.services.translator import (
    ANNOTATION_SPEC_HASH,
    CONTAINER_NAME,
    LABEL_PROJECT,
    LABEL_ROLLOUT,
    label_selector,
    live_spec_hash,
    managed_keys,
    namespace_name,
    object_name,
    translate,
)

logger = logging.getLogger(__name__)


class HealthPhase(str, Enum):
    PENDING = "Pending"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    FAILED = "Failed"


# Raisons d'attente de conteneur qui ne se résolvent pas sans intervention
FATAL_WAITING_REASONS = {
    "ErrImagePull",
    "ImagePullBackOff",
    "InvalidImageName",
    "CreateContainerConfigError",
    "CreateContainerError",
    "CrashLoopBackOff",
}

# Events Warning qui font passer un rollout incomplet en Degraded
DEGRADING_EVENT_REASONS = {
    "FailedScheduling",
    "FailedCreate",
    "FailedMount",
    "FailedAttachVolume",
    "BackOff",
}


def parse_time(value: Any) -> Optional[datetime]:
    """ISO-8601 (tel que sérialisé par le client kubernetes) -> datetime UTC"""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def event_time(event: Dict[str, Any]) -> Optional[datetime]:
    return (parse_time(event.get("lastTimestamp"))
            or parse_time(event.get("eventTime"))
            or parse_time(event.get("firstTimestamp"))
            or parse_time((event.get("metadata") or {}).get("creationTimestamp")))


def _container_statuses(pod: Dict[str, Any]) -> List[Dict[str, Any]]:
    status = pod.get("status") or {}
    return (status.get("initContainerStatuses") or []) + (status.get("containerStatuses") or [])


def _waiting_reason(container_status: Dict[str, Any]) -> Optional[str]:
    return (((container_status.get("state") or {}).get("waiting")) or {}).get("reason")


def find_fatal_error(deployment: Dict[str, Any], pods: List[Dict[str, Any]]) -> Optional[Tuple[str, str]]:
    """Retourne (raison, message) si un objet est dans un état d'erreur irrécupérable"""
    for condition in (deployment.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Progressing" and condition.get("reason") == "ProgressDeadlineExceeded":
            return "ProgressDeadlineExceeded", condition.get("message") or "Délai de progression dépassé"
        if condition.get("type") == "ReplicaFailure" and condition.get("status") == "True":
            return condition.get("reason") or "ReplicaFailure", condition.get("message") or ""

    for pod in pods:
        for container_status in _container_statuses(pod):
            reason = _waiting_reason(container_status)
            if reason in FATAL_WAITING_REASONS:
                message = ((container_status.get("state") or {}).get("waiting") or {}).get("message") or ""
                return reason, f"{pod['metadata']['name']}: {message}".rstrip(": ")
    return None


def progress_reference(deployment: Dict[str, Any]) -> Optional[datetime]:
    """Dernier instant où le déploiement a progressé (début de la fenêtre de grâce)"""
    candidates = [parse_time((deployment.get("metadata") or {}).get("creationTimestamp"))]
    for condition in (deployment.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Progressing":
            candidates.append(parse_time(condition.get("lastUpdateTime")))
            candidates.append(parse_time(condition.get("lastTransitionTime")))
    candidates = [c for c in candidates if c is not None]
    return max(candidates) if candidates else None


def compute_phase(deployment: Optional[Dict[str, Any]], pods: List[Dict[str, Any]],
                  events: List[Dict[str, Any]], out_of_sync: List[str],
                  now: datetime, grace_seconds: float) -> Tuple[HealthPhase, str, str]:
    """Phase de santé agrégée d'un rollout: (phase, raison, message).

    Précédence: erreur irrécupérable -> Failed; déploiement non observé ->
    Pending; convergé et synchronisé -> Healthy; incomplet dans la fenêtre de
    grâce sans événement dégradant -> Progressing; sinon Degraded.
    """
    if deployment is None:
        return HealthPhase.PENDING, "NotObserved", "Le déploiement n'est pas encore visible dans le cluster"

    fatal = find_fatal_error(deployment, pods)
    if fatal:
        return HealthPhase.FAILED, fatal[0], fatal[1]

    spec = deployment.get("spec") or {}
    status = deployment.get("status") or {}
    metadata = deployment.get("metadata") or {}
    desired = spec.get("replicas") if spec.get("replicas") is not None else 1
    ready = status.get("readyReplicas") or 0
    updated = status.get("updatedReplicas") or 0
    stale = (status.get("observedGeneration") or 0) < (metadata.get("generation") or 0)

    if not stale and ready >= desired and updated >= desired:
        if out_of_sync:
            return HealthPhase.DEGRADED, "OutOfSync", f"Objets désynchronisés: {', '.join(out_of_sync)}"
        return HealthPhase.HEALTHY, "Available", f"{ready}/{desired} réplicas prêts"

    reference = progress_reference(deployment) or now
    window_start = now.timestamp() - grace_seconds
    warnings = [
        event for event in events
        if event.get("type") == "Warning"
        and event.get("reason") in DEGRADING_EVENT_REASONS
        and (event_time(event) or now).timestamp() >= window_start
    ]

    if warnings:
        latest = warnings[-1]
        return HealthPhase.DEGRADED, latest.get("reason") or "Warning", latest.get("message") or ""
    if out_of_sync:
        return HealthPhase.DEGRADED, "OutOfSync", f"Objets désynchronisés: {', '.join(out_of_sync)}"
    if reference.timestamp() >= window_start:
        return HealthPhase.PROGRESSING, "RollingOut", f"{ready}/{desired} réplicas prêts"
    return HealthPhase.DEGRADED, "ReplicasUnavailable", f"{ready}/{desired} réplicas prêts après la fenêtre de grâce"


def _to_millicores(value: Any) -> int:
    return int(parse_quantity(value) * 1000) if value not in (None, "") else 0


def _to_bytes(value: Any) -> int:
    return int(parse_quantity(value)) if value not in (None, "") else 0


class StatusService:
    """Chemin de lecture: statut, événements, métriques et logs d'un rollout.

    Un objet est désynchronisé s'il manque, s'il est en trop ou si son annotation
    spec-hash diffère du manifeste attendu. Une édition manuelle qui garde
    l'annotation n'est pas vue.
    """

    def __init__(self, cluster: ClusterGateway, record_store: RecordStore,
                 grace_seconds: float = 300, events_limit: int = 50, cache_ttl: float = 2.0,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.cluster = cluster
        self.record_store = record_store
        self.grace_seconds = grace_seconds
        self.events_limit = events_limit
        self.clock = clock
        self._cache = TTLCache(ttl=cache_ttl)

    def _require_rollout(self, project_id: int, rollout_id: int):
        rollout = self.record_store.find_rollout(project_id, rollout_id)
        if rollout is None:
            raise NotFoundError(f"Rollout {rollout_id} introuvable dans le projet {project_id}")
        return rollout

    def _rollout_events(self, namespace: str, rollout_id: int) -> List[Dict[str, Any]]:
        """Événements des objets du rollout (ReplicaSets et pods compris), du plus ancien au plus récent"""
        name = object_name(rollout_id)
        events = [
            event for event in self.cluster.list_events(namespace)
            if ((event.get("involvedObject") or {}).get("name") or "") == name
            or ((event.get("involvedObject") or {}).get("name") or "").startswith(f"{name}-")
        ]
        epoch = datetime.fromtimestamp(0, tz=timezone.utc)
        events.sort(key=lambda event: event_time(event) or epoch)
        return events

    def _out_of_sync(self, rollout, namespace: str) -> List[str]:
        wanted = translate(rollout).by_key()
        drift = []
        for key in managed_keys(rollout.id):
            kind, name = key
            live = self.cluster.get_object(kind, namespace, name)
            manifest = wanted.get(key)
            if manifest is None:
                if live is not None:
                    drift.append(f"{kind}/{name}")
            elif live_spec_hash(live) != manifest["metadata"]["annotations"][ANNOTATION_SPEC_HASH]:
                drift.append(f"{kind}/{name}")
        return drift

    # === STATUT ===
    def get_status(self, project_id: int, rollout_id: int) -> Dict[str, Any]:
        rollout = self._require_rollout(project_id, rollout_id)
        return self._cache.get_or_compute(
            ("status", project_id, rollout_id),
            lambda: self._compute_status(rollout),
        )

    def _compute_status(self, rollout) -> Dict[str, Any]:
        namespace = namespace_name(rollout.project_id)
        deployment = self.cluster.get_object("Deployment", namespace, object_name(rollout.id))
        pods = self.cluster.list_pods(namespace, label_selector(rollout.project_id, rollout.id))
        events = self._rollout_events(namespace, rollout.id)
        out_of_sync = self._out_of_sync(rollout, namespace)
        now = self.clock()

        phase, reason, message = compute_phase(deployment, pods, events, out_of_sync, now, self.grace_seconds)

        spec = (deployment or {}).get("spec") or {}
        status = (deployment or {}).get("status") or {}
        conditions = status.get("conditions") or []
        latest_condition = None
        if conditions:
            latest = max(conditions, key=lambda c: parse_time(c.get("lastUpdateTime")) or now)
            latest_condition = {
                "type": latest.get("type"),
                "status": latest.get("status"),
                "reason": latest.get("reason"),
                "message": latest.get("message"),
            }

        return {
            "project_id": rollout.project_id,
            "rollout_id": rollout.id,
            "phase": phase.value,
            "reason": reason,
            "message": message,
            "replicas": {
                "desired": spec.get("replicas") if deployment else rollout.replicas,
                "ready": status.get("readyReplicas") or 0,
                "available": status.get("availableReplicas") or 0,
                "updated": status.get("updatedReplicas") or 0,
            },
            "pods": [self._pod_summary(pod) for pod in pods],
            "condition": latest_condition,
            "out_of_sync": out_of_sync,
            "observed_at": now.isoformat(),
        }

    @staticmethod
    def _pod_summary(pod: Dict[str, Any]) -> Dict[str, Any]:
        status = pod.get("status") or {}
        statuses = status.get("containerStatuses") or []
        reason = None
        for container_status in _container_statuses(pod):
            reason = _waiting_reason(container_status) or reason
        return {
            "name": pod["metadata"]["name"],
            "phase": status.get("phase") or "Unknown",
            "ready": bool(statuses) and all(cs.get("ready") for cs in statuses),
            "restarts": sum(cs.get("restartCount") or 0 for cs in statuses),
            "reason": reason or status.get("reason"),
            "node": (pod.get("spec") or {}).get("nodeName"),
            "started_at": status.get("startTime"),
            "images": [cs.get("image") for cs in statuses if cs.get("image")],
        }

    # === ÉVÉNEMENTS ===
    def get_events(self, project_id: int, rollout_id: int) -> List[Dict[str, Any]]:
        rollout = self._require_rollout(project_id, rollout_id)
        events = self._rollout_events(namespace_name(rollout.project_id), rollout.id)
        recent = events[-self.events_limit:] if self.events_limit > 0 else []
        return [
            {
                "type": event.get("type") or "Normal",
                "reason": event.get("reason"),
                "message": event.get("message"),
                "object": "{}/{}".format(
                    (event.get("involvedObject") or {}).get("kind"),
                    (event.get("involvedObject") or {}).get("name"),
                ),
                "count": event.get("count") or 1,
                "first_seen": event.get("firstTimestamp") or event.get("eventTime"),
                "last_seen": (event_time(event).isoformat() if event_time(event) else None),
            }
            for event in recent
        ]

    # === MÉTRIQUES ===
    def get_metrics(self, project_id: int, rollout_id: int) -> Dict[str, Any]:
        """Consommation CPU/mémoire par pod; vide plutôt qu'en erreur si metrics-server manque"""
        rollout = self._require_rollout(project_id, rollout_id)
        namespace = namespace_name(rollout.project_id)
        selector = label_selector(rollout.project_id, rollout.id)
        pods = self.cluster.list_pods(namespace, selector)

        available = True
        try:
            samples = {item["metadata"]["name"]: item for item in self.cluster.get_pod_metrics(namespace, selector)}
        except ControlPlaneError as e:
            logger.warning(f"Métriques indisponibles pour le rollout {rollout.id}: {e}")
            samples, available = {}, False

        entries = []
        for pod in pods:
            pod_name = pod["metadata"]["name"]
            containers = []
            for container in (samples.get(pod_name) or {}).get("containers") or []:
                usage = container.get("usage") or {}
                try:
                    containers.append({
                        "name": container.get("name"),
                        "cpu_millicores": _to_millicores(usage.get("cpu")),
                        "memory_bytes": _to_bytes(usage.get("memory")),
                    })
                except ValueError as e:
                    logger.warning(f"Quantité illisible pour {pod_name}: {e}")
            entries.append({
                "name": pod_name,
                "cpu_millicores": sum(c["cpu_millicores"] for c in containers),
                "memory_bytes": sum(c["memory_bytes"] for c in containers),
                "containers": containers,
                "timestamp": (samples.get(pod_name) or {}).get("timestamp"),
            })

        return {
            "project_id": rollout.project_id,
            "rollout_id": rollout.id,
            "available": available,
            "pods": entries,
            "totals": {
                "cpu_millicores": sum(e["cpu_millicores"] for e in entries),
                "memory_bytes": sum(e["memory_bytes"] for e in entries),
            },
            "observed_at": self.clock().isoformat(),
        }

    # === LOGS ===
    def open_logs(self, project_id: int, pod_name: str, follow: bool = False,
                  tail_lines: Optional[int] = None) -> LogStream:
        """Ouvre un flux de logs pour un pod géré du projet.

        Chaque appel ouvre un nouveau flux; l'appelant doit le fermer
        (``close()`` libère immédiatement la connexion au cluster).
        """
        if not self.record_store.project_exists(project_id):
            raise NotFoundError(f"Projet {project_id} introuvable")
        namespace = namespace_name(project_id)
        pod = self.cluster.get_pod(namespace, pod_name)
        labels = ((pod or {}).get("metadata") or {}).get("labels") or {}
        if pod is None or labels.get(LABEL_PROJECT) != str(project_id) or LABEL_ROLLOUT not in labels:
            raise NotFoundError(f"Pod {pod_name} introuvable dans le projet {project_id}")
        try:
            rollout_id = int(labels[LABEL_ROLLOUT])
        except ValueError:
            raise NotFoundError(f"Pod {pod_name} n'appartient à aucun rollout connu")
        self._require_rollout(project_id, rollout_id)

        return self.cluster.stream_pod_logs(
            namespace, pod_name, follow=follow, tail_lines=tail_lines, container=CONTAINER_NAME
        )
