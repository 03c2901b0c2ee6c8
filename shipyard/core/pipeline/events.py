from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional


EventType = Literal[
    "RunCreated",
    "RunStarted",
    "StageStarted",
    "GateEvaluated",
    "StageSkipped",
    "StageBlocked",
    "StepStarted",
    "StepCompleted",
    "StepFailed",
    "StageCompleted",
    "ArtifactDeployed",
    "ArtifactPromoted",
    "PromotionHeld",
    "CancelRequested",
    "RunCompleted",
]


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PipelineEvent:
    event_type: EventType
    ts: str
    run_id: str
    stage: Optional[str] = None
    step: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def mk(
        event_type: EventType,
        run_id: str,
        stage: Optional[str] = None,
        step: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "PipelineEvent":
        return PipelineEvent(
            event_type=event_type,
            ts=now_utc_iso(),
            run_id=run_id,
            stage=stage,
            step=step,
            payload=payload or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "ts": self.ts,
            "run_id": self.run_id,
            "stage": self.stage,
            "step": self.step,
            "payload": self.payload,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "PipelineEvent":
        return PipelineEvent(
            event_type=d["event_type"],
            ts=d.get("ts") or now_utc_iso(),
            run_id=d.get("run_id", ""),
            stage=d.get("stage"),
            step=d.get("step"),
            payload=d.get("payload") or {},
        )
