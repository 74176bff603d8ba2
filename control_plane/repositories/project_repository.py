from sqlalchemy.orm import Session, selectinload
from control_plane.repositories.base_repository import BaseRepository
from control_plane.models.project import Project


class ProjectRepository(BaseRepository[Project]):
    def __init__(self, db: Session):
        super().__init__(Project, db)

    def get_with_rollouts(self, project_id: int):
        """Récupère un projet avec ses rollouts déjà chargés"""
        return (self.db.query(Project)
                .options(selectinload(Project.rollouts))
                .filter(Project.id == project_id)
                .first())

