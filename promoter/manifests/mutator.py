"""
Manifest Mutator — single-field image tag updates on kustomize overlays.

A stage locator has the form ``<path>#<image-name>`` and resolves to the
``newTag`` field of the one entry in the file's ``images:`` list whose
``name`` is ``<image-name>``. Every commit carries the skip marker so the
version-control change hook does not re-trigger the pipeline on our own writes.
"""

import re
import logging
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime

import yaml
from pydantic import BaseModel, Field

from promoter.config.settings import settings
from promoter.errors import ManifestNotFound
from promoter.manifests.store import ManifestStore

logger = logging.getLogger(__name__)


class CommitRef(BaseModel):
    """Result of a set_image_tag call."""
    revision: str
    path: str
    image: str
    version: str
    previous_version: Optional[str] = None
    message: str = ""
    created: bool = True  # False when the field already held the version
    committed_at: datetime = Field(default_factory=datetime.utcnow)


def has_skip_marker(message: str, marker: Optional[str] = None) -> bool:
    """True if a commit message was authored by the controller."""
    return (marker or settings.commit_skip_marker) in (message or "")


def parse_locator(locator: str) -> Tuple[str, str]:
    """Split ``path#image`` into its parts."""
    path, sep, image = (locator or "").partition("#")
    if not sep or not path.strip() or not image.strip():
        raise ManifestNotFound(locator, "is not of the form <path>#<image>")
    return path.strip(), image.strip()


class ManifestMutator:
    """Applies image tag updates to a ManifestStore."""

    def __init__(self, store: ManifestStore,
                 skip_marker: Optional[str] = None,
                 tag_pattern: Optional[str] = None):
        self.store = store
        self.skip_marker = skip_marker or settings.commit_skip_marker
        self._tag_re = re.compile(tag_pattern or settings.tag_pattern)

    def validate_version(self, version: str) -> str:
        version = (version or "").strip()
        if not version:
            raise ValueError("Version must be non-empty")
        if not self._tag_re.match(version):
            raise ValueError(f"Version '{version}' does not match the tag scheme {self._tag_re.pattern}")
        return version

    def _find_entry(self, locator: str, doc: Any, image: str) -> Dict[str, Any]:
        if not isinstance(doc, dict) or not isinstance(doc.get("images"), list):
            raise ManifestNotFound(locator, "has no images list")
        matches: List[Dict[str, Any]] = [
            e for e in doc["images"] if isinstance(e, dict) and e.get("name") == image
        ]
        if not matches:
            raise ManifestNotFound(locator, f"has no image named '{image}'")
        if len(matches) > 1:
            raise ManifestNotFound(locator, f"matches {len(matches)} images named '{image}'")
        return matches[0]

    def get_image_tag(self, locator: str) -> Optional[str]:
        path, image = parse_locator(locator)
        content, _ = self.store.read(path)
        entry = self._find_entry(locator, yaml.safe_load(content), image)
        tag = entry.get("newTag")
        return str(tag) if tag is not None else None

    def commit_message(self, path: str, image: str, version: str) -> str:
        return f"Promote {image} to {version} in {path} {self.skip_marker}"

    def set_image_tag(self, locator: str, new_version: str) -> CommitRef:
        """
        Set the image tag a locator points at and commit it.
        Raises ValueError for a bad version, ManifestNotFound if the locator
        does not resolve, WriteConflict if the store moved underneath us.
        """
        version = self.validate_version(new_version)
        path, image = parse_locator(locator)

        content, revision = self.store.read(path)
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ManifestNotFound(locator, f"is not valid YAML: {e}")
        entry = self._find_entry(locator, doc, image)

        previous = entry.get("newTag")
        previous = str(previous) if previous is not None else None
        if previous == version:
            logger.info(f"[MANIFEST] {locator} already at {version}, nothing to commit")
            return CommitRef(
                revision=revision, path=path, image=image, version=version,
                previous_version=previous, created=False,
            )

        entry["newTag"] = version
        message = self.commit_message(path, image, version)
        new_content = yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
        new_revision = self.store.write(path, new_content, revision, message)

        logger.info(f"[MANIFEST] {locator}: {previous} -> {version} ({new_revision[:8]})")
        return CommitRef(
            revision=new_revision, path=path, image=image, version=version,
            previous_version=previous, message=message,
        )
