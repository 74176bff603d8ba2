# control_plane/repositories/base_repository.py
from typing import TypeVar, Generic, List, Optional, Type, Dict, Any
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from control_plane.core.database import Base

# Type générique pour les modèles
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Repository générique pour les opérations CRUD de base

    Les méthodes d'écriture acceptent ``commit=False`` pour laisser
    l'appelant décider du moment du commit (hooks pré-commit).
    """

    def __init__(self, model: Type[ModelType], db: Session):
        self.model = model
        self.db = db

    def get_by_id(self, id: int) -> Optional[ModelType]:
        """Récupère un enregistrement par son ID"""
        try:
            return self.db.query(self.model).filter(self.model.id == id).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        """Récupère tous les enregistrements avec pagination"""
        try:
            return self.db.query(self.model).order_by(self.model.id).offset(skip).limit(limit).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def create(self, obj_data: Dict[str, Any], commit: bool = True) -> ModelType:
        """Crée un nouvel enregistrement"""
        try:
            db_obj = self.model(**obj_data)
            self.db.add(db_obj)
            if commit:
                self.db.commit()
                self.db.refresh(db_obj)
            else:
                self.db.flush()
            return db_obj
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def update(self, id: int, obj_data: Dict[str, Any], commit: bool = True) -> Optional[ModelType]:
        """Met à jour un enregistrement existant"""
        try:
            db_obj = self.get_by_id(id)
            if db_obj:
                for field, value in obj_data.items():
                    if hasattr(db_obj, field):
                        setattr(db_obj, field, value)
                if commit:
                    self.db.commit()
                    self.db.refresh(db_obj)
                else:
                    self.db.flush()
            return db_obj
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def delete(self, id: int, commit: bool = True) -> bool:
        """Supprime un enregistrement"""
        try:
            db_obj = self.get_by_id(id)
            if db_obj:
                self.db.delete(db_obj)
                if commit:
                    self.db.commit()
                else:
                    self.db.flush()
                return True
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e

    def exists(self, id: int) -> bool:
        """Vérifie si un enregistrement existe"""
        try:
            return self.db.query(self.model).filter(self.model.id == id).first() is not None
        except SQLAlchemyError as e:
            self.db.rollback()
            raise e
