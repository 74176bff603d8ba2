import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from control_plane.core.errors import NotFoundError, ValidationError
from control_plane.models.project import Project
from control_plane.models.rollout import AutoUpdatePolicy, Rollout
from control_plane.repositories.project_repository import ProjectRepository
from control_plane.repositories.rollout_repository import RolloutRepository
from control_plane.services.reconciler import ApplyReport, ReconciliationInterceptor

logger = logging.getLogger(__name__)

ROLLOUT_FIELDS = (
    "name", "image", "tag", "digest", "replicas", "env", "secrets", "ports", "resources",
    "auto_update", "auto_update_policy", "auto_update_pattern",
)
PROJECT_FIELDS = ("name", "description")
NULLABLE_FIELDS = ("digest", "auto_update_pattern", "description")


class RecordStore:
    """Passerelle du record store: CRUD sur projets et rollouts.

    Les hooks du ReconciliationInterceptor sont appelés avant le commit de
    la transaction; une exception levée par un hook annule la mutation.
    Chaque opération ouvre sa propre session (utilisable depuis plusieurs threads).
    """

    def __init__(self, session_factory: sessionmaker, interceptor: ReconciliationInterceptor):
        self.session_factory = session_factory
        self.interceptor = interceptor

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def _pick(data: Dict[str, Any], allowed) -> Dict[str, Any]:
        unknown = sorted(set(data) - set(allowed))
        if unknown:
            raise ValidationError(unknown[0], "champ inconnu ou non modifiable")
        return {key: value for key, value in data.items() if key in allowed}

    @staticmethod
    def _check_policy(data: Dict[str, Any]) -> None:
        for key, value in data.items():
            if value is None and key not in NULLABLE_FIELDS:
                raise ValidationError(key, "valeur obligatoire")
        policy = data.get("auto_update_policy")
        if policy is not None and policy not in {p.value for p in AutoUpdatePolicy}:
            raise ValidationError("auto_update_policy", f"politique inconnue: '{policy}'")

    # === PROJETS ===
    def list_projects(self, skip: int = 0, limit: int = 100) -> List[Project]:
        with self._session() as db:
            return ProjectRepository(db).get_all(skip=skip, limit=limit)

    def get_project(self, project_id: int) -> Project:
        with self._session() as db:
            project = ProjectRepository(db).get_with_rollouts(project_id)
            if project is None:
                raise NotFoundError(f"Projet {project_id} introuvable")
            return project

    def create_project(self, data: Dict[str, Any]) -> Project:
        values = self._pick(data, PROJECT_FIELDS)
        if not values.get("name"):
            raise ValidationError("name", "nom obligatoire")
        with self._session() as db:
            try:
                project = ProjectRepository(db).create(values, commit=False)
                self.interceptor.on_create(project)
                db.commit()
            except Exception:
                db.rollback()
                raise
            logger.info(f"Projet {project.id} créé")
            return project

    def delete_project(self, project_id: int) -> None:
        """Supprime le projet, ses rollouts (cascade ORM) et leurs objets cluster"""
        with self._session() as db:
            repository = ProjectRepository(db)
            project = repository.get_with_rollouts(project_id)
            if project is None:
                raise NotFoundError(f"Projet {project_id} introuvable")
            try:
                self.interceptor.on_delete(project)
                db.delete(project)
                db.commit()
            except Exception:
                db.rollback()
                raise
            logger.info(f"Projet {project_id} supprimé")

    # === ROLLOUTS ===
    def list_rollouts(self, project_id: int) -> List[Rollout]:
        with self._session() as db:
            if not ProjectRepository(db).exists(project_id):
                raise NotFoundError(f"Projet {project_id} introuvable")
            return RolloutRepository(db).get_by_project(project_id)

    def get_rollout(self, rollout_id: int) -> Rollout:
        with self._session() as db:
            rollout = RolloutRepository(db).get_by_id(rollout_id)
            if rollout is None:
                raise NotFoundError(f"Rollout {rollout_id} introuvable")
            return rollout

    def find_rollout(self, project_id: int, rollout_id: int) -> Optional[Rollout]:
        with self._session() as db:
            return RolloutRepository(db).get_in_project(project_id, rollout_id)

    def project_exists(self, project_id: int) -> bool:
        with self._session() as db:
            return ProjectRepository(db).exists(project_id)

    def list_auto_update_rollouts(self) -> List[Rollout]:
        with self._session() as db:
            return RolloutRepository(db).get_auto_update_enabled()

    def create_rollout(self, project_id: int, data: Dict[str, Any]) -> Tuple[Rollout, ApplyReport]:
        values = self._pick(data, ROLLOUT_FIELDS)
        self._check_policy(values)
        with self._session() as db:
            if not ProjectRepository(db).exists(project_id):
                raise NotFoundError(f"Projet {project_id} introuvable")
            try:
                rollout = RolloutRepository(db).create(dict(values, project_id=project_id), commit=False)
                report = self.interceptor.on_create(rollout)
                db.commit()
            except Exception:
                db.rollback()
                raise
            logger.info(f"Rollout {rollout.id} créé dans le projet {project_id}")
            return rollout, report

    def update_rollout(self, rollout_id: int, changes: Dict[str, Any]) -> Tuple[Rollout, ApplyReport]:
        """Met à jour un rollout; l'application partielle ne bloque pas la mutation"""
        values = self._pick(changes, ROLLOUT_FIELDS)
        self._check_policy(values)
        # Un nouveau tag ou une nouvelle image invalide le digest épinglé
        if ("image" in values or "tag" in values) and "digest" not in values:
            values["digest"] = None

        with self._session() as db:
            repository = RolloutRepository(db)
            if repository.get_by_id(rollout_id) is None:
                raise NotFoundError(f"Rollout {rollout_id} introuvable")
            try:
                rollout = repository.update(rollout_id, values, commit=False)
                report = self.interceptor.on_update(rollout)
                db.commit()
            except Exception:
                db.rollback()
                raise
            if report.error:
                logger.warning(f"Rollout {rollout_id} enregistré malgré une application partielle")
            return rollout, report

    def delete_rollout(self, rollout_id: int) -> None:
        with self._session() as db:
            repository = RolloutRepository(db)
            rollout = repository.get_by_id(rollout_id)
            if rollout is None:
                raise NotFoundError(f"Rollout {rollout_id} introuvable")
            try:
                self.interceptor.on_delete(rollout)
                repository.delete(rollout_id, commit=False)
                db.commit()
            except Exception:
                db.rollback()
                raise
            logger.info(f"Rollout {rollout_id} supprimé")
