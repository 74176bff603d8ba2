"""
Fixtures partagées: record store SQLite en mémoire, faux cluster et faux
registry implémentant les interfaces des passerelles.
"""
import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from control_plane.core.database import Base, build_session_factory
from control_plane.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    NotFoundError,
    ResolutionError,
)
from control_plane.external.k8s_client import LogStream
from control_plane.models import Project, Rollout  # noqa: F401  (tables)
from control_plane.services.artifact_service import ArtifactService
from control_plane.services.reconciler import ReconciliationInterceptor
from control_plane.services.record_store import RecordStore
from control_plane.services.status_service import StatusService
from control_plane.workers.auto_update_worker import AutoUpdateWorker


def digest(char: str) -> str:
    return "sha256:" + char * 64


class FakeCluster:
    """Cluster en mémoire, fidèle aux sémantiques de la passerelle Kubernetes"""

    def __init__(self):
        self.namespaces: Dict[str, Dict[str, str]] = {}
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.pods: Dict[str, List[Dict[str, Any]]] = {}
        self.events: Dict[str, List[Dict[str, Any]]] = {}
        self.metrics: Dict[str, List[Dict[str, Any]]] = {}
        self.metrics_error: Optional[Exception] = None
        self.logs: Dict[Tuple[str, str], List[str]] = {}
        self.opened_streams: List[LogStream] = []

        self.unavailable = False
        # (verbe, kind) -> exception levée à l'appel
        self.failures: Dict[Tuple[str, str], Exception] = {}
        # Journal des mutations: (verbe, kind, namespace, name)
        self.mutations: List[Tuple[str, str, str, str]] = []
        self._version = 0
        self._lock = threading.Lock()

    # === OUTILS DE TEST ===
    def _check(self, verb: str, kind: str = "*") -> None:
        if self.unavailable:
            raise ClusterUnavailableError(f"{verb}: cluster injoignable")
        error = self.failures.get((verb, kind)) or self.failures.get((verb, "*"))
        if error is not None:
            raise error

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def kinds(self, namespace: str) -> List[Tuple[str, str]]:
        return sorted((kind, name) for (kind, ns, name) in self.objects if ns == namespace)

    def touch(self, kind: str, namespace: str, name: str) -> None:
        """Simule une écriture concurrente (nouvelle resourceVersion)"""
        with self._lock:
            self.objects[(kind, namespace, name)]["metadata"]["resourceVersion"] = self._next_version()

    def set_deployment_status(self, namespace: str, name: str, ready: int,
                              conditions: Optional[List[Dict[str, Any]]] = None) -> None:
        deployment = self.objects[("Deployment", namespace, name)]
        deployment["status"] = {
            "readyReplicas": ready,
            "availableReplicas": ready,
            "updatedReplicas": ready,
            "conditions": conditions or [],
        }

    def add_pod(self, namespace: str, name: str, labels: Dict[str, str],
                waiting_reason: Optional[str] = None, ready: bool = True) -> Dict[str, Any]:
        state = {"waiting": {"reason": waiting_reason, "message": "échec"}} if waiting_reason else {"running": {}}
        pod = {
            "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
            "spec": {"nodeName": "node-1"},
            "status": {
                "phase": "Pending" if waiting_reason else "Running",
                "startTime": "2026-10-19T10:00:00+00:00",
                "containerStatuses": [{
                    "name": "app",
                    "image": "nginx:1.25",
                    "ready": ready and not waiting_reason,
                    "restartCount": 0,
                    "state": state,
                }],
            },
        }
        self.pods.setdefault(namespace, []).append(pod)
        return pod

    # === NAMESPACES ===
    def ensure_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        self._check("ensure_namespace")
        if name in self.namespaces:
            return False
        self.namespaces[name] = dict(labels or {})
        self.mutations.append(("create", "Namespace", "", name))
        return True

    def delete_namespace(self, name: str) -> bool:
        self._check("delete_namespace")
        if name not in self.namespaces:
            return False
        del self.namespaces[name]
        for key in [key for key in self.objects if key[1] == name]:
            del self.objects[key]
        self.mutations.append(("delete", "Namespace", "", name))
        return True

    # === OBJETS ===
    def get_object(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        self._check("get", kind)
        live = self.objects.get((kind, namespace, name))
        return copy.deepcopy(live) if live is not None else None

    def create_object(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._check("create", kind)
        name = body["metadata"]["name"]
        with self._lock:
            if (kind, namespace, name) in self.objects:
                raise ConflictError(f"{kind} {namespace}/{name} existe déjà")
            stored = copy.deepcopy(body)
            stored["metadata"]["resourceVersion"] = self._next_version()
            stored["metadata"]["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
            self.objects[(kind, namespace, name)] = stored
        self.mutations.append(("create", kind, namespace, name))
        return copy.deepcopy(stored)

    def replace_object(self, kind: str, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._check("replace", kind)
        with self._lock:
            live = self.objects.get((kind, namespace, name))
            if live is None:
                raise NotFoundError(f"{kind} {namespace}/{name} introuvable")
            stored = copy.deepcopy(body)
            stored["metadata"]["resourceVersion"] = self._next_version()
            stored["metadata"]["creationTimestamp"] = live["metadata"].get("creationTimestamp")
            if "status" in live:
                stored["status"] = live["status"]
            self.objects[(kind, namespace, name)] = stored
        self.mutations.append(("replace", kind, namespace, name))
        return copy.deepcopy(stored)

    def delete_object(self, kind: str, namespace: str, name: str) -> bool:
        self._check("delete", kind)
        with self._lock:
            if self.objects.pop((kind, namespace, name), None) is None:
                return False
        self.mutations.append(("delete", kind, namespace, name))
        return True

    def patch_annotations(self, kind: str, namespace: str, name: str,
                          annotations: Dict[str, Optional[str]],
                          resource_version: Optional[str] = None) -> None:
        self._check("patch", kind)
        with self._lock:
            live = self.objects.get((kind, namespace, name))
            if live is None:
                raise NotFoundError(f"{kind} {namespace}/{name} introuvable")
            if resource_version and live["metadata"]["resourceVersion"] != resource_version:
                raise ConflictError(f"{kind} {namespace}/{name} modifié entre-temps")
            current = live["metadata"].setdefault("annotations", {})
            for key, value in annotations.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value
            live["metadata"]["resourceVersion"] = self._next_version()
        self.mutations.append(("patch", kind, namespace, name))

    # === LECTURE ===
    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        self._check("list_pods")
        wanted = dict(part.split("=", 1) for part in label_selector.split(",") if part)
        return [
            copy.deepcopy(pod) for pod in self.pods.get(namespace, [])
            if all(pod["metadata"]["labels"].get(k) == v for k, v in wanted.items())
        ]

    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        self._check("get_pod")
        for pod in self.pods.get(namespace, []):
            if pod["metadata"]["name"] == name:
                return copy.deepcopy(pod)
        return None

    def list_events(self, namespace: str) -> List[Dict[str, Any]]:
        self._check("list_events")
        return copy.deepcopy(self.events.get(namespace, []))

    def get_pod_metrics(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        self._check("metrics")
        if self.metrics_error is not None:
            raise self.metrics_error
        return copy.deepcopy(self.metrics.get(namespace, []))

    def stream_pod_logs(self, namespace: str, name: str, follow: bool = False,
                        tail_lines: Optional[int] = None, container: Optional[str] = None) -> LogStream:
        self._check("logs")
        lines = self.logs.get((namespace, name), [])
        if tail_lines is not None:
            lines = lines[-tail_lines:]
        chunks = [(line + "\n").encode("utf-8") for line in lines]
        stream = LogStream(chunks, lambda: None)
        self.opened_streams.append(stream)
        return stream


class FakeResolver:
    """Registry en mémoire: digests par (image, tag) et liste de tags par image"""

    def __init__(self):
        self.digests: Dict[Tuple[str, str], str] = {}
        self.tags: Dict[str, List[str]] = {}
        self.error: Optional[Exception] = None
        self.on_resolve = None
        self.calls: List[Tuple[str, str]] = []

    def get_digest(self, image: str, tag: str) -> str:
        self.calls.append((image, tag))
        if self.on_resolve is not None:
            self.on_resolve(image, tag)
        if self.error is not None:
            raise self.error
        try:
            return self.digests[(image, tag)]
        except KeyError:
            raise ResolutionError(f"{image}:{tag} introuvable")

    def get_image_tags(self, image: str) -> List[str]:
        if self.error is not None:
            raise self.error
        return list(self.tags.get(image, []))


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def record_store(session_factory, cluster):
    return RecordStore(session_factory, ReconciliationInterceptor(cluster))


@pytest.fixture
def status_service(cluster, record_store):
    return StatusService(cluster, record_store, grace_seconds=300, events_limit=50, cache_ttl=0)


@pytest.fixture
def artifact_service(resolver):
    return ArtifactService(resolver)


@pytest.fixture
def worker(record_store, artifact_service, cluster):
    return AutoUpdateWorker(record_store, artifact_service, cluster, interval_seconds=1, concurrency=2)


@pytest.fixture
def project(record_store):
    return record_store.create_project({"name": "demo"})


@pytest.fixture
def rollout_data():
    return {
        "name": "web",
        "image": "registry.example.com/team/web",
        "tag": "1.0.0",
        "replicas": 3,
        "env": {"LOG_LEVEL": "info"},
        "secrets": {"DB_PASSWORD": "s3cret"},
        "ports": [{"name": "http", "port": 8080, "host": "web.example.com"}],
        "resources": {"cpu_request": "100m", "cpu_limit": "500m", "memory_limit": "256Mi"},
    }
