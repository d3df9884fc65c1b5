"""
Manifest Stores — versioned text storage for deployment manifests.
Each write is a commit guarded by an optimistic revision check:
the caller passes the revision it read, and the store rejects the write
with WriteConflict if the head has moved since.
"""

import os
import hashlib
import logging
import subprocess
from pathlib import Path
from typing import Optional, Dict, List, Tuple
from datetime import datetime
from pydantic import BaseModel, Field

from promoter.errors import ManifestNotFound, WriteConflict, ManifestStoreError

logger = logging.getLogger(__name__)


class CommitRecord(BaseModel):
    """A single commit made through a store."""
    revision: str
    path: str
    message: str
    author: str = ""
    committed_at: datetime = Field(default_factory=datetime.utcnow)


class ManifestStore:
    """Interface every manifest store implements."""

    def head(self) -> str:
        raise NotImplementedError

    def read(self, path: str) -> Tuple[str, str]:
        """Return (content, revision) for a path. Raises ManifestNotFound."""
        raise NotImplementedError

    def write(self, path: str, content: str, expected_revision: str, message: str) -> str:
        """Commit new content. Returns the new revision. Raises WriteConflict."""
        raise NotImplementedError

    def refresh(self) -> str:
        """Bring the local view up to date with upstream (rebase). Returns the head."""
        return self.head()

    def contains(self, revision: str, ancestor: str) -> bool:
        """True if `revision` is `ancestor` or a later commit built on it."""
        return revision == ancestor


# ══════════════════════════════════════════════════════════════════════════════
# In-memory store
# ══════════════════════════════════════════════════════════════════════════════

class InMemoryManifestStore(ManifestStore):
    """Single-branch store held in a dict. Used for dry runs and tests."""

    def __init__(self, files: Optional[Dict[str, str]] = None, author: str = "promotion-controller"):
        self._files: Dict[str, str] = dict(files or {})
        self._author = author
        self._head = self._revision("", "init", repr(sorted(self._files.items())))
        self.commits: List[CommitRecord] = []
        self._lineage: List[str] = [self._head]

    @staticmethod
    def _revision(parent: str, path: str, content: str) -> str:
        return hashlib.sha1(f"{parent}\0{path}\0{content}".encode()).hexdigest()

    def head(self) -> str:
        return self._head

    def read(self, path: str) -> Tuple[str, str]:
        if path not in self._files:
            raise ManifestNotFound(path, "file does not exist")
        return self._files[path], self._head

    def write(self, path: str, content: str, expected_revision: str, message: str) -> str:
        if expected_revision != self._head:
            raise WriteConflict(path, expected_revision, f"head is {self._head[:8]}")
        self._head = self._revision(self._head, path, content)
        self._files[path] = content
        self._lineage.append(self._head)
        self.commits.append(CommitRecord(
            revision=self._head, path=path, message=message, author=self._author,
        ))
        return self._head

    def contains(self, revision: str, ancestor: str) -> bool:
        if revision not in self._lineage or ancestor not in self._lineage:
            return False
        return self._lineage.index(revision) >= self._lineage.index(ancestor)

    def files(self) -> Dict[str, str]:
        return dict(self._files)


# ══════════════════════════════════════════════════════════════════════════════
# Git working-copy store
# ══════════════════════════════════════════════════════════════════════════════

class GitManifestStore(ManifestStore):
    """
    Manifest store over a local clone, driven through the git CLI.
    Writes commit on the configured branch and push to the remote; a rejected
    push (remote moved on) is reported as WriteConflict after the local commit
    is discarded, so the caller can refresh (pull --rebase) and retry.
    """

    def __init__(self, repo_path: str, remote: str = "origin", branch: str = "main",
                 author_name: str = "promotion-controller",
                 author_email: str = "promotion-controller@localhost",
                 push: bool = True, timeout_seconds: int = 60):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.branch = branch
        self.push = push
        self.timeout_seconds = timeout_seconds
        self._env = {
            **os.environ,
            "GIT_AUTHOR_NAME": author_name, "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": author_name, "GIT_COMMITTER_EMAIL": author_email,
            "GIT_TERMINAL_PROMPT": "0",
        }

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo_path, capture_output=True, text=True,
                timeout=self.timeout_seconds, env=self._env,
            )
        except subprocess.TimeoutExpired:
            raise ManifestStoreError(f"git {args[0]}", f"timed out after {self.timeout_seconds}s")
        except OSError as e:
            raise ManifestStoreError(f"git {args[0]}", str(e))
        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ManifestStoreError(f"git {args[0]}", stderr or f"exit code {result.returncode}")
        return result

    def head(self) -> str:
        return self._git("rev-parse", "HEAD").stdout.strip()

    def _resolve(self, path: str) -> Path:
        full = (self.repo_path / path).resolve()
        if self.repo_path.resolve() not in full.parents:
            raise ManifestNotFound(path, "points outside the repository")
        return full

    def read(self, path: str) -> Tuple[str, str]:
        full = self._resolve(path)
        if not full.is_file():
            raise ManifestNotFound(path, "file does not exist")
        return full.read_text(encoding="utf-8"), self.head()

    def write(self, path: str, content: str, expected_revision: str, message: str) -> str:
        current = self.head()
        if current != expected_revision:
            raise WriteConflict(path, expected_revision, f"head is {current[:8]}")

        full = self._resolve(path)
        full.write_text(content, encoding="utf-8")
        self._git("add", "--", path)
        self._git("commit", "-m", message)
        revision = self.head()

        if self.push:
            pushed = self._git("push", self.remote, f"HEAD:{self.branch}", check=False)
            if pushed.returncode != 0:
                stderr = (pushed.stderr or "").strip()
                self._git("reset", "--hard", expected_revision)
                logger.warning(f"[MANIFEST] Push of {revision[:8]} rejected: {stderr}")
                raise WriteConflict(path, expected_revision, stderr or "push rejected")

        logger.info(f"[MANIFEST] Committed {path} at {revision[:8]}")
        return revision

    def refresh(self) -> str:
        self._git("pull", "--rebase", self.remote, self.branch)
        return self.head()

    def contains(self, revision: str, ancestor: str) -> bool:
        if revision == ancestor:
            return True
        if self._git("cat-file", "-e", f"{revision}^{{commit}}", check=False).returncode != 0:
            self._git("fetch", self.remote, self.branch, check=False)
        return self._git("merge-base", "--is-ancestor", ancestor, revision, check=False).returncode == 0
