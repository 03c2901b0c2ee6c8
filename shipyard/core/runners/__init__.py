from typing import Dict

from .base import ToolOutcome, ToolRunner
from .docker import DockerRunner
from .local import LocalRunner

RUNNERS: Dict[str, ToolRunner] = {
    "local": LocalRunner(),
    "docker": DockerRunner(),
}

__all__ = ["RUNNERS", "ToolOutcome", "ToolRunner", "LocalRunner", "DockerRunner"]
