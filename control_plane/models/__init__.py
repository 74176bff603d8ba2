from .base import BaseModel
from .project import Project
from .rollout import Rollout, AutoUpdatePolicy

__all__ = ["BaseModel", "Project", "Rollout", "AutoUpdatePolicy"]
