from __future__ import annotations

from typing import Any, Dict, Optional


class ShipyardError(Exception):
    """Base class for pipeline engine errors."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "message": str(self),
            "details": self.details,
        }


class PipelineDefinitionError(ShipyardError):
    pass


class UnknownStageError(PipelineDefinitionError):
    pass


class CycleDetectedError(PipelineDefinitionError):
    pass


class IllegalTransitionError(ShipyardError, ValueError):
    pass


class RunNotFoundError(ShipyardError):
    pass


class RunNotRetryableError(ShipyardError):
    pass


class InvalidTransitionError(ShipyardError):
    """Promotion path violation (unknown, backward or skipping environments)."""

    def __init__(self, *, from_env: Optional[str], to_env: str, reason: str):
        super().__init__(reason, details={"from_env": from_env, "to_env": to_env})
        self.from_env = from_env
        self.to_env = to_env
        self.reason = reason


class EnvironmentLockedError(ShipyardError):
    def __init__(self, environment: str, *, locked_by: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(
            f"environment '{environment}' is locked",
            details={"environment": environment, "locked_by": locked_by, "reason": reason},
        )
        self.environment = environment


class ArtifactNotDeployedError(ShipyardError):
    pass


class ManifestUpdateError(ShipyardError):
    pass


class ScanReportError(ShipyardError):
    pass


class WebhookSignatureError(ShipyardError):
    pass
