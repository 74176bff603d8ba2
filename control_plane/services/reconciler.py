import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from control_plane.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    ControlPlaneError,
    PartialApplyError,
)
from control_plane.external.k8s_client import ClusterGateway
from control_plane.models.project import Project
from control_plane.models.rollout import Rollout
from control_plane.services.translator import (
    ANNOTATION_IN_PROGRESS,
    ANNOTATION_SPEC_HASH,
    live_spec_hash,
    managed_keys,
    namespace_labels,
    namespace_name,
    translate,
)

logger = logging.getLogger(__name__)

Record = Union[Project, Rollout]
ObjectKey = Tuple[str, str]


@dataclass
class ApplyReport:
    """Résultat d'une réconciliation de mise à jour"""
    created: List[ObjectKey] = field(default_factory=list)
    updated: List[ObjectKey] = field(default_factory=list)
    deleted: List[ObjectKey] = field(default_factory=list)
    unchanged: List[ObjectKey] = field(default_factory=list)
    error: Optional[PartialApplyError] = None

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    @property
    def applied(self) -> List[ObjectKey]:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": [f"{kind}/{name}" for kind, name in self.created],
            "updated": [f"{kind}/{name}" for kind, name in self.updated],
            "deleted": [f"{kind}/{name}" for kind, name in self.deleted],
            "unchanged": [f"{kind}/{name}" for kind, name in self.unchanged],
            "error": self.error.to_dict() if self.error else None,
        }


class ReconciliationInterceptor:
    """Hooks pré-commit qui répercutent les mutations d'enregistrements sur le cluster.

    - création et suppression échouent fermées: toute erreur du cluster
      remonte et le record store annule la mutation;
    - la mise à jour échoue ouverte en cas d'application partielle: l'erreur
      est rapportée dans l'ApplyReport, le statut montre les objets désynchronisés.

    La comparaison se fait sur l'annotation spec-hash posée à l'écriture: une
    modification hors control-plane qui conserve l'annotation (``kubectl scale``,
    ``kubectl edit`` du spec) n'est ni détectée ni corrigée. Elle disparaît au
    prochain changement du rollout qui modifie le manifeste.
    """

    def __init__(self, cluster: ClusterGateway):
        self.cluster = cluster

    # === POINTS D'ENTRÉE ===
    def on_create(self, record: Record) -> Optional[ApplyReport]:
        match record:
            case Rollout():
                return self._create_rollout(record)
            case Project():
                self._create_project(record)
                return None
            case _:
                raise TypeError(f"Type d'enregistrement non géré: {type(record).__name__}")

    def on_update(self, record: Record) -> Optional[ApplyReport]:
        match record:
            case Rollout():
                return self._update_rollout(record)
            case Project():
                # Le namespace ne dépend que de l'identité du projet
                return None
            case _:
                raise TypeError(f"Type d'enregistrement non géré: {type(record).__name__}")

    def on_delete(self, record: Record) -> None:
        match record:
            case Rollout():
                self._delete_rollout(record)
            case Project():
                self._delete_project(record)
            case _:
                raise TypeError(f"Type d'enregistrement non géré: {type(record).__name__}")

    # === PROJETS ===
    def _create_project(self, project: Project) -> None:
        namespace = namespace_name(project.id)
        self.cluster.ensure_namespace(namespace, namespace_labels(project.id))
        logger.info(f"Projet {project.id}: namespace {namespace} prêt")

    def _delete_project(self, project: Project) -> None:
        """Supprime les rollouts enfants puis le namespace du projet"""
        rollouts = list(project.rollouts or [])
        for rollout in rollouts:
            self._delete_rollout(rollout)
        for rollout in rollouts:
            self._confirm_absent(rollout)

        self.cluster.delete_namespace(namespace_name(project.id))
        logger.info(f"Projet {project.id}: {len(rollouts)} rollout(s) et namespace supprimés")

    # === ROLLOUTS ===
    def _create_rollout(self, rollout: Rollout) -> ApplyReport:
        desired = translate(rollout)
        report = ApplyReport()

        self.cluster.ensure_namespace(desired.namespace, namespace_labels(rollout.project_id))
        try:
            for manifest in desired.objects:
                key = (manifest["kind"], manifest["metadata"]["name"])
                self.cluster.create_object(key[0], desired.namespace, copy.deepcopy(manifest))
                report.created.append(key)
        except ControlPlaneError as e:
            if isinstance(e, ConflictError):
                logger.warning(f"Rollout {rollout.id}: objets déjà présents (tentative précédente?): {e}")
            else:
                logger.error(f"Rollout {rollout.id}: échec de création sur le cluster: {e}")
            self._discard(desired.namespace, report.created)
            raise

        logger.info(f"Rollout {rollout.id}: {len(report.created)} objet(s) créé(s) dans {desired.namespace}")
        return report

    def _discard(self, namespace: str, keys: List[ObjectKey]) -> None:
        """Retire au mieux les objets créés par une tentative avortée"""
        for kind, name in reversed(keys):
            try:
                self.cluster.delete_object(kind, namespace, name)
            except ControlPlaneError as e:
                logger.warning(f"Nettoyage impossible de {kind} {namespace}/{name}: {e}")

    def _update_rollout(self, rollout: Rollout) -> ApplyReport:
        desired = translate(rollout)
        wanted = desired.by_key()
        namespace = desired.namespace
        report = ApplyReport()
        failures: List[Tuple[ObjectKey, Exception]] = []

        self.cluster.ensure_namespace(namespace, namespace_labels(rollout.project_id))

        for key in managed_keys(rollout.id):
            kind, name = key
            manifest = wanted.get(key)
            try:
                live = self.cluster.get_object(kind, namespace, name)
                if manifest is None:
                    if live is not None:
                        self.cluster.delete_object(kind, namespace, name)
                        report.deleted.append(key)
                    continue

                if live is None:
                    self.cluster.create_object(kind, namespace, copy.deepcopy(manifest))
                    report.created.append(key)
                elif live_spec_hash(live) == manifest["metadata"]["annotations"][ANNOTATION_SPEC_HASH]:
                    report.unchanged.append(key)
                else:
                    self.cluster.replace_object(kind, namespace, name, self._carry_marker(manifest, live))
                    report.updated.append(key)
            except ClusterUnavailableError as e:
                if not report.changed and not failures:
                    logger.error(f"Rollout {rollout.id}: cluster indisponible, mise à jour rejetée: {e}")
                    raise
                failures.append((key, e))
            except ControlPlaneError as e:
                failures.append((key, e))

        if failures:
            report.error = PartialApplyError(failures, report.applied)
            logger.warning(f"Rollout {rollout.id}: {report.error.message}")
        elif report.changed:
            logger.info(
                f"Rollout {rollout.id}: {len(report.created)} créé(s), {len(report.updated)} mis à jour, "
                f"{len(report.deleted)} supprimé(s)"
            )
        else:
            logger.debug(f"Rollout {rollout.id}: aucun changement")
        return report

    @staticmethod
    def _carry_marker(manifest: Dict[str, Any], live: Dict[str, Any]) -> Dict[str, Any]:
        """Conserve le marqueur d'auto-update en cours lors d'un remplacement"""
        body = copy.deepcopy(manifest)
        marker = ((live.get("metadata") or {}).get("annotations") or {}).get(ANNOTATION_IN_PROGRESS)
        if marker:
            body["metadata"]["annotations"][ANNOTATION_IN_PROGRESS] = marker
        return body

    def _delete_rollout(self, rollout: Rollout) -> None:
        namespace = namespace_name(rollout.project_id)
        removed = 0
        for kind, name in reversed(managed_keys(rollout.id)):
            if self.cluster.delete_object(kind, namespace, name):
                removed += 1
        logger.info(f"Rollout {rollout.id}: {removed} objet(s) supprimé(s) de {namespace}")

    def _confirm_absent(self, rollout: Rollout) -> None:
        """Vérifie qu'aucun objet du rollout ne subsiste (hors objets en cours de suppression)"""
        namespace = namespace_name(rollout.project_id)
        for kind, name in managed_keys(rollout.id):
            live = self.cluster.get_object(kind, namespace, name)
            if live is not None and not (live.get("metadata") or {}).get("deletionTimestamp"):
                raise ConflictError(f"{kind} {namespace}/{name} toujours présent après suppression")
