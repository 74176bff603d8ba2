from functools import wraps
import logging

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from control_plane.core.errors import (
    ClusterUnavailableError,
    ConflictError,
    ControlPlaneError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def translate_api_exception(e: ApiException, operation: str) -> ControlPlaneError:
    """Convertit une ApiException kubernetes en erreur du control-plane"""
    status = e.status or 0
    if status == 404:
        return NotFoundError(f"{operation}: objet introuvable")
    if status == 409:
        return ConflictError(f"{operation}: objet déjà présent ou modifié entre-temps")
    if status in (400, 422):
        return ValidationError("spec", f"{operation}: rejeté par l'API ({e.reason})")
    return ClusterUnavailableError(f"{operation}: cluster indisponible (HTTP {status} {e.reason})")


def cluster_call(operation: str):
    """Décorateur qui traduit les erreurs du client kubernetes

    404 -> NotFoundError, 409 -> ConflictError, 400/422 -> ValidationError,
    tout le reste (5xx, 401/403, connexion) -> ClusterUnavailableError.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ApiException as e:
                raise translate_api_exception(e, operation) from e
            except (Urllib3HTTPError, OSError) as e:
                logger.warning(f"{operation}: erreur de connexion au cluster: {e}")
                raise ClusterUnavailableError(f"{operation}: cluster injoignable ({e})") from e

        return wrapper

    return decorator
