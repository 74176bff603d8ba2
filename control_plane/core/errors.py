"""
Taxonomie des erreurs du control-plane.

Chaque erreur porte un ``code`` stable, utilisé par les handlers FastAPI
(voir ``control_plane.api.middleware``) pour choisir le statut HTTP.
"""
from typing import Dict, List, Optional, Tuple


class ControlPlaneError(Exception):
    """Erreur de base du control-plane"""

    code = "INTERNAL"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(ControlPlaneError):
    """Entrée invalide, rejetée avant tout effet de bord"""

    code = "VALIDATION_FAILED"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> Dict:
        return {"error": self.code, "detail": self.message, "field": self.field}


class NotFoundError(ControlPlaneError):
    """L'entité n'existe pas"""

    code = "NOT_FOUND"


class ConflictError(ControlPlaneError):
    """Objet déjà présent (tentative précédente), l'appelant peut réessayer"""

    code = "CONFLICT"


class ClusterUnavailableError(ControlPlaneError):
    """Le cluster ne répond pas: on ne sait pas, ce qui est différent de 'absent'"""

    code = "UNAVAILABLE"


class ResolutionError(ControlPlaneError):
    """La résolution d'une référence d'artefact a échoué"""

    code = "RESOLUTION_FAILED"


class PartialApplyError(ControlPlaneError):
    """Mise à jour appliquée partiellement (non fatale)"""

    code = "PARTIAL_APPLY"

    def __init__(self, failures: List[Tuple[Tuple[str, str], Exception]],
                 applied: Optional[List[Tuple[str, str]]] = None):
        keys = ", ".join(f"{kind}/{name}" for (kind, name), _ in failures)
        super().__init__(f"Application partielle, objets en échec: {keys}")
        self.failures = failures
        self.applied = applied or []

    def to_dict(self) -> Dict:
        return {
            "error": self.code,
            "detail": self.message,
            "failures": [
                {"kind": kind, "name": name, "error": str(exc)}
                for (kind, name), exc in self.failures
            ],
        }
