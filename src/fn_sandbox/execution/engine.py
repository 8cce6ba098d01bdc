from __future__ import annotations

from typing import Protocol

from .types import ExecutionOutcome, ExecutionRequest


class ExecutionEngine(Protocol):
    name: str
    wrapper_line_offset: int

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Execute one request and return normalized execution outcome.

        Script failures come back in `ExecutionOutcome.error`; failures of the
        engine itself raise `StrategyError`.

        Example:
            ```python
            outcome = await engine.execute(ExecutionRequest(code="return 1", timeout_ms=5000))
            ```
        """
        ...
