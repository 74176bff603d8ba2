"""
Traduction d'un rollout en objets Kubernetes désirés.

``translate`` est une fonction pure: même état de rollout, mêmes manifestes,
octet pour octet. Aucune lecture d'horloge, de configuration ni du cluster.
Chaque manifeste porte l'empreinte de son propre contenu
(``control-plane.io/spec-hash``), ce qui permet au reconciler de comparer
désiré et réel sans diff champ par champ.
"""
import base64
import copy
import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from kubernetes.utils import parse_quantity

from control_plane.core.errors import ValidationError

MANAGED_BY = "rollout-control-plane"
LABEL_PROJECT = "control-plane.io/project"
LABEL_ROLLOUT = "control-plane.io/rollout"
ANNOTATION_SPEC_HASH = "control-plane.io/spec-hash"
ANNOTATION_CONFIG_HASH = "control-plane.io/config-hash"
ANNOTATION_IN_PROGRESS = "control-plane.io/update-in-progress"

CONTAINER_NAME = "app"
RESERVED_ENV = ("PROJECT_ID", "ROLLOUT_ID")

# Ordre d'application; la suppression se fait dans l'ordre inverse
APPLY_ORDER = ("ConfigMap", "Secret", "Deployment", "Service", "Ingress")

_IMAGE_RE = re.compile(
    r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?::[0-9]+)?"
    r"(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$"
)
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PORT_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,13}[a-z0-9])?$")
_HOST_RE = re.compile(r"^(\*\.)?[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$")
_PROTOCOLS = ("TCP", "UDP", "SCTP")
_RESOURCE_FIELDS = {
    "cpu_request": ("requests", "cpu"),
    "cpu_limit": ("limits", "cpu"),
    "memory_request": ("requests", "memory"),
    "memory_limit": ("limits", "memory"),
}


# === NOMMAGE ===
def namespace_name(project_id: int) -> str:
    return f"project-{project_id}"


def object_name(rollout_id: int) -> str:
    return f"rollout-{rollout_id}"


def config_map_name(rollout_id: int) -> str:
    return f"rollout-{rollout_id}-env"


def secret_name(rollout_id: int) -> str:
    return f"rollout-{rollout_id}-secrets"


def managed_keys(rollout_id: int) -> List[Tuple[str, str]]:
    """Tous les (kind, name) que la traduction peut produire pour un rollout"""
    names = {
        "ConfigMap": config_map_name(rollout_id),
        "Secret": secret_name(rollout_id),
        "Deployment": object_name(rollout_id),
        "Service": object_name(rollout_id),
        "Ingress": object_name(rollout_id),
    }
    return [(kind, names[kind]) for kind in APPLY_ORDER]


def selector_labels(project_id: int, rollout_id: int) -> Dict[str, str]:
    return {LABEL_PROJECT: str(project_id), LABEL_ROLLOUT: str(rollout_id)}


def label_selector(project_id: int, rollout_id: int) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector_labels(project_id, rollout_id).items()))


def namespace_labels(project_id: int) -> Dict[str, str]:
    return {"app.kubernetes.io/managed-by": MANAGED_BY, LABEL_PROJECT: str(project_id)}


# === EMPREINTES ===
def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def spec_hash(manifest: Mapping[str, Any]) -> str:
    """Empreinte d'un manifeste, hors annotation d'empreinte elle-même"""
    stripped = copy.deepcopy(dict(manifest))
    annotations = stripped.get("metadata", {}).get("annotations", {})
    annotations.pop(ANNOTATION_SPEC_HASH, None)
    return hashlib.sha256(canonical_json(stripped).encode("utf-8")).hexdigest()


def live_spec_hash(live: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not live:
        return None
    return ((live.get("metadata") or {}).get("annotations") or {}).get(ANNOTATION_SPEC_HASH)


@dataclass(frozen=True)
class DesiredSpec:
    namespace: str
    objects: Tuple[Dict[str, Any], ...]

    def keys(self) -> List[Tuple[str, str]]:
        return [(obj["kind"], obj["metadata"]["name"]) for obj in self.objects]

    def by_key(self) -> Dict[Tuple[str, str], Dict[str, Any]]:
        return {(obj["kind"], obj["metadata"]["name"]): obj for obj in self.objects}


# === VALIDATION ===
def _validate_artifact(rollout) -> None:
    image = rollout.image or ""
    if len(image) > 255 or not _IMAGE_RE.match(image):
        raise ValidationError("image", f"référence d'image invalide: '{image}'")
    if "@" in image or image.rsplit("/", 1)[-1].count(":"):
        raise ValidationError("image", "le tag et le digest se renseignent dans leurs propres champs")
    tag = rollout.tag or "latest"
    if not _TAG_RE.match(tag):
        raise ValidationError("tag", f"tag invalide: '{tag}'")
    if rollout.digest and not _DIGEST_RE.match(rollout.digest):
        raise ValidationError("digest", f"digest invalide: '{rollout.digest}'")


def _stringify(field: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ValidationError(field, "seules les valeurs scalaires sont acceptées")


def _validate_variables(field: str, variables: Any) -> Dict[str, str]:
    if variables is None:
        return {}
    if not isinstance(variables, Mapping):
        raise ValidationError(field, "un dictionnaire clé/valeur est attendu")
    result = {}
    for key, value in variables.items():
        if not isinstance(key, str) or not _ENV_KEY_RE.match(key):
            raise ValidationError(f"{field}.{key}", "nom de variable invalide")
        if key in RESERVED_ENV:
            raise ValidationError(f"{field}.{key}", "nom de variable réservé")
        result[key] = _stringify(f"{field}.{key}", value)
    return result


def _validate_ports(ports: Any) -> List[Dict[str, Any]]:
    if ports is None:
        return []
    if not isinstance(ports, list):
        raise ValidationError("ports", "une liste est attendue")
    seen_names, seen_numbers, seen_routes = set(), set(), set()
    result = []
    for index, entry in enumerate(ports):
        field = f"ports[{index}]"
        if not isinstance(entry, Mapping):
            raise ValidationError(field, "un objet est attendu")
        number = entry.get("port")
        if isinstance(number, bool) or not isinstance(number, int) or not 1 <= number <= 65535:
            raise ValidationError(f"{field}.port", "numéro de port invalide")
        name = entry.get("name") or f"p{number}"
        if not _PORT_NAME_RE.match(name):
            raise ValidationError(f"{field}.name", f"nom de port invalide: '{name}'")
        protocol = (entry.get("protocol") or "TCP").upper()
        if protocol not in _PROTOCOLS:
            raise ValidationError(f"{field}.protocol", f"protocole invalide: '{protocol}'")
        if name in seen_names:
            raise ValidationError(f"{field}.name", f"nom de port en double: '{name}'")
        if (number, protocol) in seen_numbers:
            raise ValidationError(f"{field}.port", f"port en double: {number}/{protocol}")
        seen_names.add(name)
        seen_numbers.add((number, protocol))

        port = {"name": name, "port": number, "protocol": protocol}
        host = entry.get("host")
        if host:
            host = host.lower()
            if not _HOST_RE.match(host) or len(host) > 253:
                raise ValidationError(f"{field}.host", f"hôte invalide: '{host}'")
            if protocol != "TCP":
                raise ValidationError(f"{field}.host", "une règle d'ingress exige un port TCP")
            path = entry.get("path") or "/"
            if not path.startswith("/"):
                raise ValidationError(f"{field}.path", "le chemin doit commencer par '/'")
            if (host, path) in seen_routes:
                raise ValidationError(f"{field}.host", f"route en double: {host}{path}")
            seen_routes.add((host, path))
            port["host"] = host
            port["path"] = path
        result.append(port)
    return result


def _validate_resources(resources: Any) -> Dict[str, Dict[str, str]]:
    if not resources:
        return {}
    if not isinstance(resources, Mapping):
        raise ValidationError("resources", "un dictionnaire est attendu")
    result: Dict[str, Dict[str, str]] = {}
    parsed = {}
    for key, value in resources.items():
        if key not in _RESOURCE_FIELDS:
            raise ValidationError(f"resources.{key}", "ressource inconnue")
        if value in (None, ""):
            continue
        try:
            parsed[key] = parse_quantity(value)
        except ValueError:
            raise ValidationError(f"resources.{key}", f"quantité invalide: '{value}'")
        section, name = _RESOURCE_FIELDS[key]
        result.setdefault(section, {})[name] = str(value)
    for kind in ("cpu", "memory"):
        request, limit = parsed.get(f"{kind}_request"), parsed.get(f"{kind}_limit")
        if request is not None and limit is not None and limit < request:
            raise ValidationError(f"resources.{kind}_limit", "la limite est inférieure à la requête")
    return result


# === TRADUCTION ===
def _with_hash(manifest: Dict[str, Any]) -> Dict[str, Any]:
    manifest["metadata"].setdefault("annotations", {})[ANNOTATION_SPEC_HASH] = spec_hash(manifest)
    return manifest


def _metadata(name: str, namespace: str, labels: Dict[str, str]) -> Dict[str, Any]:
    return {"name": name, "namespace": namespace, "labels": dict(labels), "annotations": {}}


def translate(rollout) -> DesiredSpec:
    """Calcule les objets désirés d'un rollout (fonction pure)"""
    if rollout.id is None or rollout.project_id is None:
        raise ValidationError("id", "le rollout doit être identifié et rattaché à un projet")
    project_id, rollout_id = rollout.project_id, rollout.id

    _validate_artifact(rollout)
    replicas = rollout.replicas if rollout.replicas is not None else 1
    if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
        raise ValidationError("replicas", "entier positif ou nul attendu")
    env = _validate_variables("env", rollout.env)
    secrets = _validate_variables("secrets", rollout.secrets)
    collisions = sorted(set(env) & set(secrets))
    if collisions:
        raise ValidationError(f"secrets.{collisions[0]}", "clé déjà définie dans env")
    ports = _validate_ports(rollout.ports)
    resources = _validate_resources(rollout.resources)

    namespace = namespace_name(project_id)
    name = object_name(rollout_id)
    selector = selector_labels(project_id, rollout_id)
    labels = dict(selector, **{
        "app.kubernetes.io/name": name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    })

    tag = rollout.tag or "latest"
    image = f"{rollout.image}:{tag}"
    if rollout.digest:
        image = f"{image}@{rollout.digest}"

    objects: List[Dict[str, Any]] = []
    env_from = []

    if env:
        objects.append(_with_hash({
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": _metadata(config_map_name(rollout_id), namespace, labels),
            "data": {key: env[key] for key in sorted(env)},
        }))
        env_from.append({"configMapRef": {"name": config_map_name(rollout_id)}})

    if secrets:
        objects.append(_with_hash({
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": _metadata(secret_name(rollout_id), namespace, labels),
            "data": {
                key: base64.b64encode(secrets[key].encode("utf-8")).decode("ascii")
                for key in sorted(secrets)
            },
        }))
        env_from.append({"secretRef": {"name": secret_name(rollout_id)}})

    config_hash = hashlib.sha256(canonical_json({"env": env, "secrets": secrets}).encode("utf-8")).hexdigest()

    container: Dict[str, Any] = {
        "name": CONTAINER_NAME,
        "image": image,
        "imagePullPolicy": "IfNotPresent" if rollout.digest else "Always",
        "env": [
            {"name": "PROJECT_ID", "value": str(project_id)},
            {"name": "ROLLOUT_ID", "value": str(rollout_id)},
        ],
    }
    if env_from:
        container["envFrom"] = env_from
    if ports:
        container["ports"] = [
            {"name": p["name"], "containerPort": p["port"], "protocol": p["protocol"]}
            for p in ports
        ]
    if resources:
        container["resources"] = resources

    objects.append(_with_hash({
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(name, namespace, labels),
        "spec": {
            "replicas": replicas,
            "revisionHistoryLimit": 5,
            "selector": {"matchLabels": dict(selector)},
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {"maxSurge": "25%", "maxUnavailable": "25%"},
            },
            "template": {
                "metadata": {
                    "labels": dict(labels),
                    "annotations": {ANNOTATION_CONFIG_HASH: config_hash},
                },
                "spec": {"containers": [container]},
            },
        },
    }))

    if ports:
        objects.append(_with_hash({
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _metadata(name, namespace, labels),
            "spec": {
                "type": "ClusterIP",
                "selector": dict(selector),
                "ports": [
                    {"name": p["name"], "port": p["port"], "targetPort": p["port"], "protocol": p["protocol"]}
                    for p in ports
                ],
            },
        }))

    routes = sorted((p["host"], p["path"], p["port"]) for p in ports if p.get("host"))
    if routes:
        rules: Dict[str, List[Dict[str, Any]]] = {}
        for host, path, number in routes:
            rules.setdefault(host, []).append({
                "path": path,
                "pathType": "Prefix",
                "backend": {"service": {"name": name, "port": {"number": number}}},
            })
        objects.append(_with_hash({
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": _metadata(name, namespace, labels),
            "spec": {
                "rules": [{"host": host, "http": {"paths": paths}} for host, paths in rules.items()],
            },
        }))

    return DesiredSpec(namespace=namespace, objects=tuple(objects))
