"""Source-control webhook parsing (GitHub-style payloads)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .pipeline.models import Trigger, TriggerKind


_log = logging.getLogger("shipyard.webhooks")

ZERO_SHA = "0" * 40

PR_ACTIONS = {"opened", "synchronize", "reopened", "ready_for_review"}


@dataclass(frozen=True)
class WebhookResult:
    trigger: Optional[Trigger]
    reason: str = ""

    @property
    def ignored(self) -> bool:
        return self.trigger is None


def _ignored(reason: str) -> WebhookResult:
    _log.info("Webhook ignored: %s", reason)
    return WebhookResult(trigger=None, reason=reason)


def _require(d: Dict[str, Any], key: str) -> Any:
    v = d.get(key)
    if v in (None, ""):
        raise ValueError(f"webhook payload is missing '{key}'")
    return v


def _actor(payload: Dict[str, Any]) -> Optional[str]:
    sender = payload.get("sender") or {}
    pusher = payload.get("pusher") or {}
    return sender.get("login") or pusher.get("name")


def parse_push(payload: Dict[str, Any]) -> WebhookResult:
    ref = str(_require(payload, "ref"))
    after = str(payload.get("after") or "")
    if payload.get("deleted") or after == ZERO_SHA:
        return _ignored(f"{ref} deleted")

    if ref.startswith("refs/tags/"):
        # annotated tags: `after` is the tag object, head_commit is the commit
        sha = str((payload.get("head_commit") or {}).get("id") or after)
        if not sha:
            raise ValueError("webhook payload is missing 'after'")
        return WebhookResult(
            Trigger(kind=TriggerKind.RELEASE_TAG, ref=ref[len("refs/tags/"):], sha=sha, actor=_actor(payload))
        )

    if ref.startswith("refs/heads/"):
        if not after:
            raise ValueError("webhook payload is missing 'after'")
        return WebhookResult(
            Trigger(kind=TriggerKind.PUSH, ref=ref[len("refs/heads/"):], sha=after, actor=_actor(payload))
        )

    return _ignored(f"unsupported ref {ref}")


def parse_pull_request(payload: Dict[str, Any]) -> WebhookResult:
    action = str(payload.get("action") or "")
    if action not in PR_ACTIONS:
        return _ignored(f"pull_request action '{action}'")

    pr = _require(payload, "pull_request")
    head = pr.get("head") or {}
    base = pr.get("base") or {}
    return WebhookResult(
        Trigger(
            kind=TriggerKind.PULL_REQUEST,
            # branch filters on PR stages apply to the target branch
            ref=str(_require(base, "ref")),
            sha=str(_require(head, "sha")),
            pr_number=payload.get("number") or pr.get("number"),
            actor=_actor(payload),
        )
    )


def parse_event(event: str, payload: Dict[str, Any]) -> WebhookResult:
    if not isinstance(payload, dict):
        raise ValueError("webhook payload must be a JSON object")
    event = (event or "").strip().lower()
    if event == "ping":
        return _ignored("ping")
    if event == "push":
        return parse_push(payload)
    if event == "pull_request":
        return parse_pull_request(payload)
    return _ignored(f"unsupported event '{event or '(none)'}'")
