import pytest

from shipyard.core.errors import WebhookSignatureError
from shipyard.core.pipeline.models import TriggerKind
from shipyard.core.signing import ensure_signature, sign_payload, verify_payload
from shipyard.core.webhooks import ZERO_SHA, parse_event

from conftest import SHA


def test_push_to_branch():
    res = parse_event("push", {"ref": "refs/heads/main", "after": SHA, "pusher": {"name": "dev"}})
    assert not res.ignored
    assert res.trigger.kind == TriggerKind.PUSH
    assert res.trigger.ref == "main"
    assert res.trigger.sha == SHA
    assert res.trigger.actor == "dev"


def test_tag_push_uses_commit_sha():
    tag_object = "f" * 40
    res = parse_event(
        "push",
        {"ref": "refs/tags/v1.4.0", "after": tag_object, "head_commit": {"id": SHA}, "sender": {"login": "rel"}},
    )
    assert res.trigger.kind == TriggerKind.RELEASE_TAG
    assert res.trigger.ref == "v1.4.0"
    assert res.trigger.sha == SHA
    assert res.trigger.actor == "rel"


def test_pull_request_targets_base_branch():
    payload = {
        "action": "synchronize",
        "number": 42,
        "pull_request": {"head": {"ref": "feature/x", "sha": SHA}, "base": {"ref": "main"}},
    }
    res = parse_event("pull_request", payload)
    assert res.trigger.kind == TriggerKind.PULL_REQUEST
    assert res.trigger.ref == "main"
    assert res.trigger.pr_number == 42


@pytest.mark.parametrize(
    "event, payload",
    [
        ("ping", {"zen": "Keep it logically awesome."}),
        ("issues", {"action": "opened"}),
        ("push", {"ref": "refs/heads/old", "after": ZERO_SHA, "deleted": True}),
        ("push", {"ref": "refs/notes/commits", "after": SHA}),
        ("pull_request", {"action": "closed", "pull_request": {}}),
    ],
)
def test_ignored_events(event, payload):
    res = parse_event(event, payload)
    assert res.ignored
    assert res.reason


@pytest.mark.parametrize(
    "event, payload",
    [
        ("push", {"after": SHA}),
        ("push", {"ref": "refs/heads/main"}),
        ("pull_request", {"action": "opened", "pull_request": {"head": {}, "base": {"ref": "main"}}}),
        ("push", ["not", "an", "object"]),
    ],
)
def test_malformed_payloads(event, payload):
    with pytest.raises(ValueError):
        parse_event(event, payload)


def test_signature_verification():
    body = b'{"ref":"refs/heads/main"}'
    sig = sign_payload(body, "s3cret")
    assert sig.startswith("sha256=")
    assert verify_payload(body, sig, "s3cret")
    assert not verify_payload(body, sig, "other")
    assert not verify_payload(body + b" ", sig, "s3cret")
    assert not verify_payload(body, None, "s3cret")

    ensure_signature(body, None, None)
    ensure_signature(body, sig, "s3cret")
    with pytest.raises(WebhookSignatureError):
        ensure_signature(body, "sha256=deadbeef", "s3cret")
