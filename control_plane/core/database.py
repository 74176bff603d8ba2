# control_plane/core/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from typing import Optional

Base = declarative_base()


class DatabaseManager:
    """Singleton pour la gestion de la base de données"""
    _instance = None
    _engine = None
    _session_factory = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(DatabaseManager, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._engine is None:
            self._initialize_database()

    def _initialize_database(self):
        """Initialise la connexion à la base de données"""
        database_url = self._get_database_url()

        connect_args = {}
        if database_url.startswith("sqlite"):
            # Les hooks et le worker tournent dans des threads différents
            connect_args["check_same_thread"] = False

        self._engine = create_engine(
            database_url,
            pool_pre_ping=True,
            pool_recycle=300,
            connect_args=connect_args,
            echo=False
        )

        self._session_factory = build_session_factory(self._engine)

    def _get_database_url(self) -> str:
        """Construit l'URL de la base de données"""
        from control_plane.config import settings

        return settings.database_url

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    def create_tables(self):
        """Crée toutes les tables"""
        Base.metadata.create_all(bind=self._engine)


def build_session_factory(engine) -> sessionmaker:
    """Fabrique de sessions; les objets restent lisibles après commit"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine
    )


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Instance unique, créée au premier usage"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager

