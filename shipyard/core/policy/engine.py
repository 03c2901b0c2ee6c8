from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from .models import PolicyResult, PolicyStatus


PolicyFn = Callable[[Dict[str, Any]], Optional[PolicyResult]]

_DECISIVE = (PolicyStatus.SKIP, PolicyStatus.FAIL)


class PolicyEngine:
    """Evaluates policies in order.

    With `stop_on_decisive`, evaluation ends at the first SKIP or FAIL.
    """

    def __init__(self, policies: List[PolicyFn], *, stop_on_decisive: bool = False):
        self._policies = list(policies)
        self._stop_on_decisive = stop_on_decisive

    @property
    def policies(self) -> List[PolicyFn]:
        return list(self._policies)

    def evaluate(self, context: Dict[str, Any]) -> List[PolicyResult]:
        results: List[PolicyResult] = []
        for fn in self._policies:
            r = fn(context)
            if r is None:
                continue
            results.append(r)
            if self._stop_on_decisive and r.status in _DECISIVE:
                break
        return results

    @staticmethod
    def is_blocking(results: List[PolicyResult]) -> bool:
        return any(r.status == PolicyStatus.FAIL for r in results)

    @staticmethod
    def first_decisive(results: List[PolicyResult]) -> Optional[PolicyResult]:
        for r in results:
            if r.status in _DECISIVE:
                return r
        return None
