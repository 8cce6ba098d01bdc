from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class StrategyError(RuntimeError):
    """An execution engine could not run the request at all.

    Example:
        ```python
        raise StrategyError("worker exited without a reply")
        ```
    """


class RemoteStrategyError(StrategyError):
    """The remote sandbox service failed at the transport or protocol level.

    Example:
        ```python
        raise RemoteStrategyError("Remote sandbox returned HTTP 502")
        ```
    """


class LocalStrategyError(StrategyError):
    """The local worker process could not be started or replied garbage.

    Example:
        ```python
        raise LocalStrategyError("Worker returned invalid JSON")
        ```
    """


@dataclass(slots=True)
class ExecutionRequest:
    """Normalized request sent to an execution engine.

    `bindings` carries the standard names every script sees; `direct_bindings`
    carries custom-tool parameters exposed as top-level variables.

    Example:
        ```python
        req = ExecutionRequest(code="return 1 + 1", timeout_ms=5000)
        ```
    """

    code: str
    timeout_ms: int
    bindings: dict[str, Any] = field(default_factory=dict)
    direct_bindings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RawError:
    """Error exactly as reported by the runtime that executed the script.

    Example:
        ```python
        err = RawError(message="name 'x' is not defined", kind="NameError")
        ```
    """

    message: str
    kind: str = "Error"
    stack: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "RawError":
        """Build a raw error from a worker or service JSON fragment.

        Example:
            ```python
            err = RawError.from_payload({"message": "boom", "kind": "ValueError"})
            ```
        """
        if not isinstance(payload, dict):
            return cls(message=str(payload))
        stack = payload.get("stack")
        return cls(
            message=str(payload.get("message", "")),
            kind=str(payload.get("kind") or "Error"),
            stack=str(stack) if stack else None,
        )


@dataclass(slots=True)
class ExecutionOutcome:
    """Normalized response returned by an execution engine.

    Example:
        ```python
        out = ExecutionOutcome(result=42, logs=["computed"])
        ```
    """

    result: Any = None
    logs: list[str] = field(default_factory=list)
    error: RawError | None = None

    @property
    def ok(self) -> bool:
        """Return whether the script completed without error.

        Example:
            ```python
            ExecutionOutcome(result=1).ok  # True
            ```
        """
        return self.error is None
