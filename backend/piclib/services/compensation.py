from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any

from piclib.core import metrics

logger = logging.getLogger(__name__)

UndoStep = Callable[[], Awaitable[Any]]


class Compensations:
    """Undo steps registered while a multi-store operation progresses.

    When the block raises, the registered steps run newest first and the
    original exception propagates unchanged. A failing undo step is logged
    and never replaces the original error::

        async with Compensations("add_library") as undo:
            await blobs.ensure_prefix(prefix)
            undo.push("delete_prefix", lambda: blobs.delete_prefix(prefix))
            await metadata.add_library(...)
    """

    def __init__(self, operation: str, **context: Any) -> None:
        self.operation = operation
        self.context = context
        self._steps: list[tuple[str, UndoStep]] = []

    def push(self, name: str, step: UndoStep) -> None:
        self._steps.append((name, step))

    def clear(self) -> None:
        self._steps.clear()

    async def __aenter__(self) -> Compensations:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if exc is None or not self._steps:
            return False
        metrics.record_compensation()
        while self._steps:
            name, step = self._steps.pop()
            try:
                await step()
            except Exception:
                logger.exception(
                    "import_compensation_failed",
                    extra={"operation": self.operation, "step": name, **self._stringified_context()},
                )
            else:
                logger.info(
                    "compensation_applied",
                    extra={"operation": self.operation, "step": name, **self._stringified_context()},
                )
        return False

    def _stringified_context(self) -> dict[str, str]:
        return {key: str(value) for key, value in self.context.items()}
