"""Re-point Kubernetes workload manifests at a new image reference.

Only the `image` field of matching containers is rewritten; everything else
in the manifest is left to the GitOps repository owners.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml

from shipyard.core.errors import ManifestUpdateError

from .repo import GitRepo


_log = logging.getLogger("shipyard.gitops")


def image_repository(image: str) -> str:
    """`registry:5000/team/app:1.2@sha256:..` -> `registry:5000/team/app`."""
    ref = (image or "").split("@", 1)[0]
    slash = ref.rfind("/")
    colon = ref.rfind(":")
    if colon > slash:
        ref = ref[:colon]
    return ref


def _pod_specs(doc: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    kind = str(doc.get("kind") or "")
    spec = doc.get("spec") or {}
    if kind == "Pod":
        yield spec
    elif kind == "CronJob":
        yield (((spec.get("jobTemplate") or {}).get("spec") or {}).get("template") or {}).get("spec") or {}
    else:
        yield ((spec.get("template") or {}).get("spec")) or {}


def _containers(doc: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for pod in _pod_specs(doc):
        for key in ("initContainers", "containers"):
            for c in pod.get(key) or []:
                if isinstance(c, dict):
                    yield c


@dataclass
class ManifestUpdate:
    path: str
    image: str
    changed: bool
    previous: List[str] = field(default_factory=list)
    commit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "image": self.image,
            "changed": self.changed,
            "previous": list(self.previous),
            "commit": self.commit,
        }


class ManifestUpdater:
    def __init__(
        self,
        *,
        repo_root: Path,
        manifest_path: str,
        container: Optional[str] = None,
        commit: bool = True,
        author: Optional[str] = None,
    ):
        self.repo_root = Path(repo_root)
        self.manifest_path = manifest_path
        self.container = container
        self.commit = commit
        self.author = author

    def path_for(self, environment: str) -> Path:
        return self.repo_root / self.manifest_path.format(environment=environment)

    def set_image(self, text: str, image: str) -> Dict[str, Any]:
        """Returns {"text": new_text, "previous": [...], "matched": n}."""
        try:
            docs = [d for d in yaml.safe_load_all(text) if d is not None]
        except yaml.YAMLError as e:
            raise ManifestUpdateError(f"manifest is not valid YAML: {e}")

        repo = image_repository(image)
        previous: List[str] = []
        matched = 0
        for doc in docs:
            if not isinstance(doc, dict):
                continue
            for c in _containers(doc):
                if self.container:
                    if c.get("name") != self.container:
                        continue
                elif image_repository(str(c.get("image") or "")) != repo:
                    continue
                matched += 1
                previous.append(str(c.get("image") or ""))
                c["image"] = image

        return {
            "text": yaml.safe_dump_all(docs, sort_keys=False, default_flow_style=False),
            "previous": previous,
            "matched": matched,
        }

    def update(self, *, environment: str, image: str, message: Optional[str] = None) -> ManifestUpdate:
        p = self.path_for(environment)
        if not p.exists():
            raise ManifestUpdateError(
                f"manifest not found for environment '{environment}': {p}",
                details={"environment": environment, "path": str(p)},
            )

        result = self.set_image(p.read_text(encoding="utf-8"), image)
        if result["matched"] == 0:
            raise ManifestUpdateError(
                f"no container in {p} matches image {image_repository(image)}",
                details={"environment": environment, "path": str(p), "container": self.container},
            )

        changed = any(prev != image for prev in result["previous"])
        out = ManifestUpdate(path=str(p), image=image, changed=changed, previous=result["previous"])
        if not changed:
            _log.info("Manifest %s already points at %s", p, image)
            return out

        p.write_text(result["text"], encoding="utf-8")
        _log.info("Manifest %s updated to %s", p, image)

        if self.commit:
            try:
                repo = GitRepo(self.repo_root, author=self.author).init()
                out.commit = repo.commit(
                    [str(p.relative_to(self.repo_root))],
                    message or f"deploy({environment}): {image}",
                )
            except RuntimeError as e:
                raise ManifestUpdateError(str(e), details={"environment": environment, "path": str(p)})
        return out
