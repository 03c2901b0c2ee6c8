"""Shared helpers for the API routers."""

from __future__ import annotations

from typing import Dict, NoReturn, Type

from fastapi import HTTPException

from shipyard.core.approvals import ApprovalStore
from shipyard.core.errors import (
    ArtifactNotDeployedError,
    EnvironmentLockedError,
    IllegalTransitionError,
    InvalidTransitionError,
    PipelineDefinitionError,
    RunNotFoundError,
    RunNotRetryableError,
    ShipyardError,
    UnknownStageError,
    WebhookSignatureError,
)
from shipyard.core.pipeline.orchestrator import PipelineOrchestrator
from shipyard.settings import get_settings


# first match wins; subclasses before their bases
_STATUS: Dict[Type[ShipyardError], int] = {
    RunNotFoundError: 404,
    UnknownStageError: 400,
    WebhookSignatureError: 401,
    IllegalTransitionError: 409,
    InvalidTransitionError: 409,
    EnvironmentLockedError: 409,
    ArtifactNotDeployedError: 409,
    RunNotRetryableError: 409,
    PipelineDefinitionError: 500,
}


def get_orchestrator() -> PipelineOrchestrator:
    return PipelineOrchestrator.from_settings(get_settings())


def get_approval_store() -> ApprovalStore:
    s = get_settings()
    return ApprovalStore(workspace_root=s.workspace_root, ttl_seconds=s.approval_ttl_seconds)


def status_for(e: ShipyardError) -> int:
    for cls, status in _STATUS.items():
        if isinstance(e, cls):
            return status
    return 400


def raise_http(e: ShipyardError) -> NoReturn:
    raise HTTPException(status_code=status_for(e), detail=e.to_dict()) from e
