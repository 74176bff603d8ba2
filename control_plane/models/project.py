from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel


class Project(BaseModel):
    __tablename__ = "projects"
    # Identifiants jamais réutilisés: ils nomment les objets du cluster
    __table_args__ = {"sqlite_autoincrement": True}

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Relations
    rollouts = relationship(
        "Rollout",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Rollout.id",
    )

    def __repr__(self):
        return f"<Project(id={self.id}, name='{self.name}')>"

    def to_dict(self):
        """Convertit le modèle en dictionnaire"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None
        }
