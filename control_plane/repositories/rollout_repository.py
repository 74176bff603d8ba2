from typing import List, Optional
from sqlalchemy.orm import Session
from control_plane.repositories.base_repository import BaseRepository
from control_plane.models.rollout import Rollout


class RolloutRepository(BaseRepository[Rollout]):
    """Repository pour les rollouts"""

    def __init__(self, db: Session):
        super().__init__(Rollout, db)

    def get_by_project(self, project_id: int) -> List[Rollout]:
        """Récupère tous les rollouts d'un projet"""
        return (self.db.query(Rollout)
                .filter(Rollout.project_id == project_id)
                .order_by(Rollout.id)
                .all())

    def get_in_project(self, project_id: int, rollout_id: int) -> Optional[Rollout]:
        """Récupère un rollout uniquement s'il appartient au projet"""
        return (self.db.query(Rollout)
                .filter(Rollout.id == rollout_id, Rollout.project_id == project_id)
                .first())

    def get_auto_update_enabled(self) -> List[Rollout]:
        """Récupère les rollouts avec l'auto-update activé"""
        return (self.db.query(Rollout)
                .filter(Rollout.auto_update == True)  # noqa: E712
                .order_by(Rollout.id)
                .all())
