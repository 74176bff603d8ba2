from pydantic import BaseModel
from typing import List, Optional, Dict, Any

# Les contraintes métier (noms réservés, quantités, routes...) sont validées
# par le translator; ici on ne vérifie que la forme des requêtes.


class PortSpec(BaseModel):
    port: int
    name: Optional[str] = None
    protocol: str = "TCP"
    host: Optional[str] = None
    path: Optional[str] = None


class ResourceSpec(BaseModel):
    cpu_request: Optional[str] = None
    cpu_limit: Optional[str] = None
    memory_request: Optional[str] = None
    memory_limit: Optional[str] = None


# === PROJETS ===
class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None


class ProjectResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


# === ROLLOUTS ===
class RolloutCreate(BaseModel):
    name: str
    image: str
    tag: str = "latest"
    digest: Optional[str] = None
    replicas: int = 1
    env: Dict[str, Any] = {}
    secrets: Dict[str, str] = {}
    ports: List[PortSpec] = []
    resources: ResourceSpec = ResourceSpec()
    auto_update: bool = False
    auto_update_policy: str = "track-tag"
    auto_update_pattern: Optional[str] = None


class RolloutUpdate(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None
    tag: Optional[str] = None
    digest: Optional[str] = None
    replicas: Optional[int] = None
    env: Optional[Dict[str, Any]] = None
    secrets: Optional[Dict[str, str]] = None
    ports: Optional[List[PortSpec]] = None
    resources: Optional[ResourceSpec] = None
    auto_update: Optional[bool] = None
    auto_update_policy: Optional[str] = None
    auto_update_pattern: Optional[str] = None


class RolloutResponse(BaseModel):
    id: int
    project_id: int
    name: str
    image: str
    tag: str
    digest: Optional[str]
    artifact_reference: str
    replicas: int
    env: Dict[str, Any]
    secret_keys: List[str]
    ports: List[Dict[str, Any]]
    resources: Dict[str, Any]
    auto_update: bool
    auto_update_policy: str
    auto_update_pattern: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


class ProjectDetailResponse(ProjectResponse):
    rollouts: List[RolloutResponse]


class ApplyReportResponse(BaseModel):
    created: List[str]
    updated: List[str]
    deleted: List[str]
    unchanged: List[str]
    error: Optional[Dict[str, Any]] = None


class RolloutMutationResponse(BaseModel):
    rollout: RolloutResponse
    apply: Optional[ApplyReportResponse] = None


# === LECTURE DU STATUT ===
class ReplicaCounts(BaseModel):
    desired: Optional[int]
    ready: int
    available: int
    updated: int


class PodSummary(BaseModel):
    name: str
    phase: str
    ready: bool
    restarts: int
    reason: Optional[str]
    node: Optional[str]
    started_at: Optional[str]
    images: List[str]


class ConditionInfo(BaseModel):
    type: Optional[str]
    status: Optional[str]
    reason: Optional[str]
    message: Optional[str]


class RolloutStatusResponse(BaseModel):
    project_id: int
    rollout_id: int
    phase: str
    reason: Optional[str]
    message: Optional[str]
    replicas: ReplicaCounts
    pods: List[PodSummary]
    condition: Optional[ConditionInfo]
    out_of_sync: List[str]
    observed_at: str


class EventResponse(BaseModel):
    type: str
    reason: Optional[str]
    message: Optional[str]
    object: str
    count: int
    first_seen: Optional[str]
    last_seen: Optional[str]


class ContainerMetrics(BaseModel):
    name: Optional[str]
    cpu_millicores: int
    memory_bytes: int


class PodMetrics(BaseModel):
    name: str
    cpu_millicores: int
    memory_bytes: int
    containers: List[ContainerMetrics]
    timestamp: Optional[str]


class MetricsTotals(BaseModel):
    cpu_millicores: int
    memory_bytes: int


class RolloutMetricsResponse(BaseModel):
    project_id: int
    rollout_id: int
    available: bool
    pods: List[PodMetrics]
    totals: MetricsTotals
    observed_at: str


# === AUTO-UPDATE ===
class AutoUpdateResponse(BaseModel):
    rollout_id: int
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    previous: Optional[str] = None
    reference: Optional[str] = None
    partial_error: Optional[Dict[str, Any]] = None
