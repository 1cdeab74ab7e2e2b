"""Sequential bulk execution with per-item success/failure tally."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger("achei_leads")


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def record_success(self, item: Any, value: Any = None) -> None:
        self.succeeded += 1
        self.results.append({"item": item, "ok": True, "value": value})

    def record_failure(self, item: Any, error: str) -> None:
        self.failed += 1
        self.results.append({"item": item, "ok": False, "error": error})

    def as_dict(self) -> Dict[str, Any]:
        return {"succeeded": self.succeeded, "failed": self.failed, "results": self.results}


class BatchExecutor:
    """Runs an operation over each item, one at a time, never aborting on a failed item."""

    def __init__(self, label: str = "batch", item_key: Optional[Callable[[Any], Any]] = None):
        self.label = label
        self.item_key = item_key or (lambda item: item)

    def _log_done(self, result: BatchResult) -> None:
        logger.info(
            f"{self.label} concluido",
            extra={"event_type": "success", "succeeded": result.succeeded, "failed": result.failed},
        )

    def run(self, items: Iterable[Any], operation: Callable[[Any], Any]) -> BatchResult:
        result = BatchResult()
        for item in items:
            key = self.item_key(item)
            try:
                value = operation(item)
            except Exception as exc:
                result.record_failure(key, str(exc))
                continue
            result.record_success(key, value)
        self._log_done(result)
        return result

    async def arun(self, items: Iterable[Any], operation: Callable[[Any], Awaitable[Any]]) -> BatchResult:
        result = BatchResult()
        for item in items:
            key = self.item_key(item)
            try:
                value = await operation(item)
            except Exception as exc:
                result.record_failure(key, str(exc))
                continue
            result.record_success(key, value)
        self._log_done(result)
        return result
