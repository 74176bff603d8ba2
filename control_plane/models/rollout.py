from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship
import enum

from .base import BaseModel


class AutoUpdatePolicy(str, enum.Enum):
    TRACK_TAG = "track-tag"
    PIN_DIGEST = "pin-digest"
    SEMVER = "semver"


class Rollout(BaseModel):
    __tablename__ = "rollouts"
    __table_args__ = {"sqlite_autoincrement": True}

    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Artefact
    image = Column(String(512), nullable=False)
    tag = Column(String(128), nullable=False, default="latest")
    digest = Column(String(71), nullable=True)  # sha256:<64 hex>

    # Workload
    replicas = Column(Integer, nullable=False, default=1)
    env = Column(JSON, nullable=False, default=dict)
    secrets = Column(JSON, nullable=False, default=dict)
    ports = Column(JSON, nullable=False, default=list)
    resources = Column(JSON, nullable=False, default=dict)

    # Auto-update
    auto_update = Column(Boolean, nullable=False, default=False, index=True)
    auto_update_policy = Column(String(20), nullable=False, default=AutoUpdatePolicy.TRACK_TAG.value)
    auto_update_pattern = Column(String(255), nullable=True)

    # Relations
    project = relationship("Project", back_populates="rollouts")

    @property
    def artifact_reference(self) -> str:
        """Référence complète de l'image: repo:tag[@digest]"""
        reference = f"{self.image}:{self.tag or 'latest'}"
        if self.digest:
            reference = f"{reference}@{self.digest}"
        return reference

    def __repr__(self):
        return f"<Rollout(id={self.id}, project_id={self.project_id}, image='{self.artifact_reference}')>"

    def to_dict(self):
        """Convertit le modèle en dictionnaire (les secrets ne sont jamais exposés)"""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "image": self.image,
            "tag": self.tag,
            "digest": self.digest,
            "artifact_reference": self.artifact_reference,
            "replicas": self.replicas,
            "env": dict(self.env or {}),
            "secret_keys": sorted((self.secrets or {}).keys()),
            "ports": list(self.ports or []),
            "resources": dict(self.resources or {}),
            "auto_update": self.auto_update,
            "auto_update_policy": self.auto_update_policy,
            "auto_update_pattern": self.auto_update_pattern,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None
        }
