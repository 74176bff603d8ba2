from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol

from control_plane.core.decorators import cluster_call, translate_api_exception
from control_plane.core.errors import ClusterUnavailableError

logger = logging.getLogger(__name__)

# kind -> (attribut de l'API, suffixe des méthodes du client)
KIND_OPERATIONS = {
    "Deployment": ("apps_v1", "namespaced_deployment"),
    "Service": ("v1", "namespaced_service"),
    "Ingress": ("networking_v1", "namespaced_ingress"),
    "ConfigMap": ("v1", "namespaced_config_map"),
    "Secret": ("v1", "namespaced_secret"),
}


class LogStream:
    """Itérateur de lignes de logs, fermable depuis un autre thread.

    ``close()`` coupe immédiatement la connexion HTTP sous-jacente: une
    lecture bloquée (mode follow) se termine alors sans erreur.
    """

    def __init__(self, chunks: Iterable[bytes], on_close: Callable[[], None]):
        self._chunks = iter(chunks)
        self._on_close = on_close
        self._buffer = b""
        self._pending: List[str] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        while not self._pending:
            if self._closed:
                raise StopIteration
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._flush_tail()
                self.close()
                if self._pending:
                    break
                raise
            except (Urllib3HTTPError, OSError, ValueError, AttributeError) as e:
                if self._closed:
                    raise StopIteration
                self.close()
                raise ClusterUnavailableError(f"Flux de logs interrompu: {e}") from e
            self._buffer += chunk
            *lines, self._buffer = self._buffer.split(b"\n")
            self._pending.extend(line.decode("utf-8", errors="replace") for line in lines)
        return self._pending.pop(0)

    def _flush_tail(self):
        if self._buffer:
            self._pending.append(self._buffer.decode("utf-8", errors="replace"))
            self._buffer = b""

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._on_close()
        except Exception as e:
            logger.debug(f"Fermeture du flux de logs: {e}")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class ClusterGateway(Protocol):
    """Opérations typées attendues du cluster (implémentées par K8sClient)"""

    def ensure_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool: ...

    def delete_namespace(self, name: str) -> bool: ...

    def get_object(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]: ...

    def create_object(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]: ...

    def replace_object(self, kind: str, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete_object(self, kind: str, namespace: str, name: str) -> bool: ...

    def patch_annotations(self, kind: str, namespace: str, name: str,
                          annotations: Dict[str, Optional[str]],
                          resource_version: Optional[str] = None) -> None: ...

    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]: ...

    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]: ...

    def list_events(self, namespace: str) -> List[Dict[str, Any]]: ...

    def get_pod_metrics(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]: ...

    def stream_pod_logs(self, namespace: str, name: str, follow: bool = False,
                        tail_lines: Optional[int] = None, container: Optional[str] = None) -> LogStream: ...


class K8sClient:
    def __init__(self, context: Optional[str] = None, request_timeout: float = 30.0):
        # Délai par requête; les flux de logs en follow ne bornent que la connexion
        self.request_timeout = request_timeout
        try:
            config.load_incluster_config()
        except config.ConfigException:
            try:
                config.load_kube_config(context=context)
            except Exception as e:
                logger.error(f"Impossible de charger la configuration Kubernetes: {e}")
                raise

        self.api_client = client.ApiClient()
        self.v1 = client.CoreV1Api(self.api_client)
        self.apps_v1 = client.AppsV1Api(self.api_client)
        self.networking_v1 = client.NetworkingV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    def _to_dict(self, obj) -> Dict[str, Any]:
        """Objet typé du client -> manifeste dict (clés camelCase)"""
        return self.api_client.sanitize_for_serialization(obj)

    def _method(self, kind: str, verb: str):
        try:
            api_attr, suffix = KIND_OPERATIONS[kind]
        except KeyError:
            raise ValueError(f"Type d'objet non géré: {kind}")
        return getattr(getattr(self, api_attr), f"{verb}_{suffix}")

    def _read(self, kind: str, namespace: str, name: str):
        return self._method(kind, "read")(name=name, namespace=namespace, _request_timeout=self.request_timeout)

    # === NAMESPACES ===
    @cluster_call("create_namespace")
    def ensure_namespace(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Crée le namespace s'il n'existe pas; retourne True s'il a été créé"""
        try:
            self.v1.create_namespace(
                client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels or {})),
                _request_timeout=self.request_timeout,
            )
            logger.info(f"Namespace {name} créé")
            return True
        except ApiException as e:
            if e.status == 409:
                return False
            raise

    @cluster_call("delete_namespace")
    def delete_namespace(self, name: str) -> bool:
        """Supprime le namespace; un namespace déjà absent n'est pas une erreur"""
        try:
            self.v1.delete_namespace(name, _request_timeout=self.request_timeout)
            logger.info(f"Suppression du namespace {name} lancée")
            return True
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace {name} déjà absent")
                return False
            raise

    # === OBJETS DE WORKLOAD ===
    @cluster_call("read_object")
    def get_object(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(self._read(kind, namespace, name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @cluster_call("create_object")
    def create_object(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        created = self._method(kind, "create")(
            namespace=namespace, body=body, _request_timeout=self.request_timeout
        )
        logger.info(f"{kind} {namespace}/{body['metadata']['name']} créé")
        return self._to_dict(created)

    @cluster_call("replace_object")
    def replace_object(self, kind: str, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Remplace l'objet en conservant resourceVersion et les champs immuables"""
        live = self._to_dict(self._read(kind, namespace, name))
        body = dict(body)
        body["metadata"] = dict(body["metadata"], resourceVersion=live["metadata"].get("resourceVersion"))
        if kind == "Service":
            live_spec = live.get("spec", {})
            body["spec"] = dict(body["spec"])
            for field in ("clusterIP", "clusterIPs"):
                if live_spec.get(field):
                    body["spec"][field] = live_spec[field]
        replaced = self._method(kind, "replace")(
            name=name, namespace=namespace, body=body, _request_timeout=self.request_timeout
        )
        logger.info(f"{kind} {namespace}/{name} mis à jour")
        return self._to_dict(replaced)

    @cluster_call("delete_object")
    def delete_object(self, kind: str, namespace: str, name: str) -> bool:
        """Supprime l'objet s'il existe; retourne False s'il était déjà absent"""
        try:
            self._method(kind, "delete")(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
                _request_timeout=self.request_timeout,
            )
            logger.info(f"{kind} {namespace}/{name} supprimé")
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    @cluster_call("patch_annotations")
    def patch_annotations(self, kind: str, namespace: str, name: str,
                          annotations: Dict[str, Optional[str]],
                          resource_version: Optional[str] = None) -> None:
        """Patch des annotations (une valeur None supprime la clé).

        Avec ``resource_version``, le patch échoue en 409 si l'objet a changé
        depuis la lecture (compare-and-set).
        """
        metadata: Dict[str, Any] = {"annotations": annotations}
        if resource_version:
            metadata["resourceVersion"] = resource_version
        self._method(kind, "patch")(
            name=name,
            namespace=namespace,
            body={"metadata": metadata},
            _request_timeout=self.request_timeout,
        )

    # === PODS, EVENTS, METRICS ===
    @cluster_call("list_pods")
    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        pods = self.v1.list_namespaced_pod(
            namespace, label_selector=label_selector, _request_timeout=self.request_timeout
        )
        return [self._to_dict(pod) for pod in pods.items]

    @cluster_call("read_pod")
    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(
                self.v1.read_namespaced_pod(name=name, namespace=namespace, _request_timeout=self.request_timeout)
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @cluster_call("list_events")
    def list_events(self, namespace: str) -> List[Dict[str, Any]]:
        events = self.v1.list_namespaced_event(namespace, _request_timeout=self.request_timeout)
        return [self._to_dict(event) for event in events.items]

    @cluster_call("pod_metrics")
    def get_pod_metrics(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        """Métriques instantanées (metrics.k8s.io) des pods du selector"""
        result = self.custom.list_namespaced_custom_object(
            group="metrics.k8s.io",
            version="v1beta1",
            namespace=namespace,
            plural="pods",
            label_selector=label_selector,
            _request_timeout=self.request_timeout,
        )
        return result.get("items", [])

    def stream_pod_logs(self, namespace: str, name: str, follow: bool = False,
                        tail_lines: Optional[int] = None, container: Optional[str] = None) -> LogStream:
        """Ouvre un flux de logs pour un pod; à fermer par l'appelant"""
        # En follow, seule la connexion est bornée: un pod silencieux ne coupe pas le flux
        timeout = (self.request_timeout, None) if follow else self.request_timeout
        kwargs = {"follow": follow, "_preload_content": False, "_request_timeout": timeout}
        if tail_lines is not None:
            kwargs["tail_lines"] = tail_lines
        if container:
            kwargs["container"] = container
        try:
            response = self.v1.read_namespaced_pod_log(name=name, namespace=namespace, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, "read_pod_log") from e
        except (Urllib3HTTPError, OSError) as e:
            raise ClusterUnavailableError(f"read_pod_log: cluster injoignable ({e})") from e

        def release():
            response.close()
            response.release_conn()

        return LogStream(response.stream(1024, decode_content=True), release)
