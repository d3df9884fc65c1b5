"""Manifest mutation — kustomize image tag updates committed through a versioned store."""
from .store import ManifestStore, InMemoryManifestStore, GitManifestStore, CommitRecord
from .mutator import ManifestMutator, CommitRef, has_skip_marker, parse_locator

__all__ = [
    "ManifestStore", "InMemoryManifestStore", "GitManifestStore", "CommitRecord",
    "ManifestMutator", "CommitRef", "has_skip_marker", "parse_locator",
]
