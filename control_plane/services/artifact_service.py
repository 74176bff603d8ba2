import fnmatch
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from control_plane.core.errors import ResolutionError
from control_plane.models.rollout import AutoUpdatePolicy

logger = logging.getLogger(__name__)

_SEMVER_RE = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)


class ArtifactResolver(Protocol):
    """Résolution de références d'artefacts (implémentée par RegistryClient)"""

    def get_digest(self, image: str, tag: str) -> str: ...

    def get_image_tags(self, image: str) -> List[str]: ...


@dataclass(frozen=True)
class ArtifactReference:
    image: str
    tag: str
    digest: Optional[str]

    def __str__(self) -> str:
        reference = f"{self.image}:{self.tag}"
        return f"{reference}@{self.digest}" if self.digest else reference


def semver_key(tag: str) -> Optional[Tuple]:
    """Clé de tri semver d'un tag, None si le tag n'est pas une version.

    Une pré-version est classée avant la version finale correspondante.
    """
    match = _SEMVER_RE.match(tag)
    if not match:
        return None
    major, minor, patch, prerelease = match.groups()
    if prerelease is None:
        pre_key: Tuple = (1,)
    else:
        pre_key = (0,) + tuple(
            (0, int(part), "") if part.isdigit() else (1, 0, part)
            for part in prerelease.split(".")
        )
    return int(major), int(minor), int(patch), pre_key


class ArtifactService:
    """Calcule la dernière référence d'artefact d'un rollout selon sa politique"""

    def __init__(self, resolver: ArtifactResolver):
        self.resolver = resolver

    def current_reference(self, rollout) -> ArtifactReference:
        return ArtifactReference(rollout.image, rollout.tag or "latest", rollout.digest)

    def resolve_latest(self, rollout) -> ArtifactReference:
        """Résout la référence la plus récente; lève ResolutionError en cas d'échec"""
        current = self.current_reference(rollout)
        policy = rollout.auto_update_policy or AutoUpdatePolicy.TRACK_TAG.value

        if policy == AutoUpdatePolicy.PIN_DIGEST.value:
            return current

        if policy == AutoUpdatePolicy.TRACK_TAG.value:
            digest = self.resolver.get_digest(current.image, current.tag)
            return ArtifactReference(current.image, current.tag, digest)

        if policy == AutoUpdatePolicy.SEMVER.value:
            tag = self._latest_semver_tag(current, rollout.auto_update_pattern)
            digest = self.resolver.get_digest(current.image, tag)
            return ArtifactReference(current.image, tag, digest)

        raise ResolutionError(f"Politique d'auto-update inconnue: '{policy}'")

    def _latest_semver_tag(self, current: ArtifactReference, pattern: Optional[str]) -> str:
        current_key = semver_key(current.tag)
        # Les pré-versions ne sont suivies que sur demande (filtre ou tag courant lui-même en pré-version)
        allow_prerelease = bool(pattern) or (current_key is not None and current_key[3][0] == 0)

        candidates = []
        for tag in self.resolver.get_image_tags(current.image):
            if pattern and not fnmatch.fnmatchcase(tag, pattern):
                continue
            key = semver_key(tag)
            if key is None or (key[3][0] == 0 and not allow_prerelease):
                continue
            candidates.append((key, tag))

        if current_key is not None:
            candidates.append((current_key, current.tag))

        if not candidates:
            raise ResolutionError(f"Aucun tag semver pour {current.image} (filtre: {pattern or 'aucun'})")

        # Jamais de retour en arrière par rapport au tag courant
        latest_key, latest_tag = max(candidates)
        logger.debug(f"Dernier tag semver pour {current.image}: {latest_tag}")
        return latest_tag
