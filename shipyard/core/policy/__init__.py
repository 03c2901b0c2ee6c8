from .engine import PolicyEngine, PolicyFn
from .models import PolicyResult, PolicyStatus

__all__ = [
    "PolicyEngine",
    "PolicyFn",
    "PolicyResult",
    "PolicyStatus",
]
