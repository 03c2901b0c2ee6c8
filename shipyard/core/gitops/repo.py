"""Minimal git plumbing for the GitOps manifests repository."""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path
from typing import List, Optional


_AUTHOR_RE = re.compile(r"^\s*(?P<name>[^<]+?)\s*<(?P<email>[^>]+)>\s*$")


class GitCommandError(RuntimeError):
    pass


class GitRepo:
    def __init__(self, path: Path, *, author: Optional[str] = None):
        self.path = Path(path)
        self.author = author

    def git(self, *args: str, check: bool = True) -> str:
        p = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=str(self.path),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            env={**os.environ, "GIT_PAGER": "cat", "PAGER": "cat", "GIT_TERMINAL_PROMPT": "0"},
        )
        if check and p.returncode != 0:
            detail = (p.stderr or p.stdout or "").strip()
            raise GitCommandError(f"git {args[0] if args else ''} failed: {detail}")
        return (p.stdout or "").strip()

    def init(self) -> "GitRepo":
        self.path.mkdir(parents=True, exist_ok=True)
        if not (self.path / ".git").exists():
            self.git("init")
        return self

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def is_dirty(self) -> bool:
        return bool(self.git("status", "--porcelain"))

    def _identity(self) -> List[str]:
        m = _AUTHOR_RE.match(self.author or "")
        if not m:
            return []
        return ["-c", f"user.name={m.group('name')}", "-c", f"user.email={m.group('email')}"]

    def commit(self, paths: List[str], message: str) -> Optional[str]:
        """Commit `paths`; None when they carry no change."""
        self.git("add", "--", *paths)
        if not self.git("diff", "--cached", "--name-only", "--", *paths):
            return None
        self.git(*self._identity(), "commit", "-m", message)
        return self.head()
