from pydantic_settings import BaseSettings
from dotenv import load_dotenv
from typing import List, Optional
from pathlib import Path
import logging

root_dir = Path(__file__).parent.parent
env_path = root_dir / ".env"
load_dotenv(env_path)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Rollout Control Plane"
    CORS_ORIGINS: List[str] = ["*"]
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Record store
    DATABASE_URL: str = "sqlite:///./control_plane.db"
    AUTO_CREATE_TABLES: bool = True

    # Kubernetes
    KUBE_CONTEXT: Optional[str] = None
    KUBE_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Lecture du statut
    ROLLOUT_GRACE_SECONDS: int = 300
    EVENTS_LIMIT: int = 50
    STATUS_CACHE_TTL_SECONDS: float = 2.0
    LOG_FOLLOW_TIMEOUT_SECONDS: int = 3600
    LOG_TAIL_LINES: int = 500

    # Auto-update
    AUTO_UPDATE_ENABLED: bool = True
    AUTO_UPDATE_INTERVAL_SECONDS: int = 60
    AUTO_UPDATE_CONCURRENCY: int = 4
    AUTO_UPDATE_MARKER_TTL_SECONDS: int = 600

    # Registry
    REGISTRY_TIMEOUT_SECONDS: int = 10
    REGISTRY_USERNAME: Optional[str] = None
    REGISTRY_PASSWORD: Optional[str] = None

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = "ignore"
        case_sensitive = True


try:
    settings = Settings()
except Exception as e:
    logger.error(f"Création des settings impossible: {e}")
    raise
