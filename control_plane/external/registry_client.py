import hashlib
import logging
import re
import threading
from typing import Dict, List, Optional, Tuple

import requests

from control_plane.core.errors import ResolutionError

logger = logging.getLogger(__name__)

DOCKER_HUB_HOST = "registry-1.docker.io"
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", DOCKER_HUB_HOST}

MANIFEST_ACCEPT = (
    "application/vnd.oci.image.index.v1+json, "
    "application/vnd.oci.image.manifest.v1+json, "
    "application/vnd.docker.distribution.manifest.list.v2+json, "
    "application/vnd.docker.distribution.manifest.v2+json"
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryClient:
    """Client minimal de l'API de distribution OCI (v2).

    Sert uniquement à résoudre des références d'artefacts: tag -> digest
    et liste des tags d'un dépôt. Gère le challenge Bearer (Docker Hub,
    GHCR, ...) avec un cache de tokens par (registry, scope).
    """

    def __init__(self, timeout: int = 10, username: Optional[str] = None,
                 password: Optional[str] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self._tokens: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def split_image(image: str) -> Tuple[str, str]:
        """Sépare 'host/path' en (host du registry, chemin du dépôt)"""
        parts = image.split("/", 1)
        if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
            host, repository = parts
        else:
            host, repository = DOCKER_HUB_HOST, image
        if host in DOCKER_HUB_ALIASES:
            host = DOCKER_HUB_HOST
            if "/" not in repository:
                repository = f"library/{repository}"
        return host, repository

    @staticmethod
    def _base_url(host: str) -> str:
        scheme = "http" if host.startswith(("localhost", "127.0.0.1")) else "https"
        return f"{scheme}://{host}"

    def _fetch_token(self, challenge: str) -> str:
        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            raise ResolutionError(f"Challenge d'authentification invalide: {challenge}")
        auth = (self.username, self.password) if self.username and self.password else None
        try:
            response = self.session.get(realm, params=params, auth=auth, timeout=self.timeout)
        except requests.RequestException as e:
            raise ResolutionError(f"Récupération du token impossible: {e}") from e
        if response.status_code != 200:
            raise ResolutionError(f"Token refusé par {realm}: HTTP {response.status_code}")
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise ResolutionError(f"Réponse de token sans token depuis {realm}")
        return token

    def _request(self, method: str, host: str, path: str, scope: str,
                 headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """Requête vers le registry, avec une relance après challenge 401"""
        url = f"{self._base_url(host)}{path}"
        headers = dict(headers or {})
        with self._lock:
            token = self._tokens.get((host, scope))
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout)
            if response.status_code == 401:
                challenge = response.headers.get("WWW-Authenticate", "")
                if challenge.lower().startswith("bearer"):
                    token = self._fetch_token(challenge)
                    with self._lock:
                        self._tokens[(host, scope)] = token
                    headers["Authorization"] = f"Bearer {token}"
                    response = self.session.request(method, url, headers=headers, timeout=self.timeout)
                elif challenge.lower().startswith("basic") and self.username:
                    response = self.session.request(
                        method, url, headers=headers, timeout=self.timeout,
                        auth=(self.username, self.password),
                    )
        except requests.RequestException as e:
            raise ResolutionError(f"Registry {host} injoignable: {e}") from e
        return response

    def get_digest(self, image: str, tag: str) -> str:
        """Résout image:tag vers son digest de manifeste courant"""
        host, repository = self.split_image(image)
        scope = f"repository:{repository}:pull"
        path = f"/v2/{repository}/manifests/{tag}"
        headers = {"Accept": MANIFEST_ACCEPT}

        response = self._request("HEAD", host, path, scope, headers)
        digest = response.headers.get("Docker-Content-Digest") if response.status_code == 200 else None
        if digest:
            return digest

        # Certains registries ne renvoient pas le digest sur HEAD
        response = self._request("GET", host, path, scope, headers)
        if response.status_code == 404:
            raise ResolutionError(f"Tag introuvable: {image}:{tag}")
        if response.status_code != 200:
            raise ResolutionError(f"Erreur HTTP {response.status_code} pour le manifeste {image}:{tag}")
        return (response.headers.get("Docker-Content-Digest")
                or f"sha256:{hashlib.sha256(response.content).hexdigest()}")

    def get_image_tags(self, image: str, max_pages: int = 20) -> List[str]:
        """Liste les tags d'un dépôt (pagination via l'en-tête Link)"""
        host, repository = self.split_image(image)
        scope = f"repository:{repository}:pull"
        path = f"/v2/{repository}/tags/list?n=1000"
        tags: List[str] = []

        for _ in range(max_pages):
            response = self._request("GET", host, path, scope)
            if response.status_code == 404:
                raise ResolutionError(f"Dépôt introuvable: {image}")
            if response.status_code != 200:
                raise ResolutionError(f"Erreur HTTP {response.status_code} lors de la liste des tags de {image}")
            tags.extend(response.json().get("tags") or [])

            next_link = response.links.get("next", {}).get("url")
            if not next_link:
                break
            path = next_link if next_link.startswith("/") else f"/{next_link.split('/', 3)[-1]}"

        return tags
