from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .diagnostics import Diagnostic, diagnose, format_error
from .execution.engine import ExecutionEngine
from .execution.types import ExecutionOutcome, ExecutionRequest, RawError, StrategyError
from .templates import resolve

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000


class RequestValidationError(ValueError):
    """The request cannot be executed as given.

    Example:
        ```python
        raise RequestValidationError("No code provided")
        ```
    """


@dataclass(slots=True)
class FunctionRequest:
    """One function execution request, already decoded from the transport.

    Example:
        ```python
        req = FunctionRequest(code='return "Hello World"', timeout_ms=5000)
        ```
    """

    code: str
    params: dict[str, Any] = field(default_factory=dict)
    env_vars: dict[str, Any] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    is_custom_tool: bool = False
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


@dataclass(slots=True)
class FunctionOutput:
    """Successful execution payload.

    Example:
        ```python
        out = FunctionOutput(result=4, stdout=["done"], execution_time_ms=12)
        ```
    """

    result: Any
    stdout: list[str]
    execution_time_ms: int


@dataclass(slots=True)
class RunResult:
    """Normalized outcome returned by `run_function`.

    Example:
        ```python
        result = RunResult(success=False, error="No code provided")
        ```
    """

    success: bool
    output: FunctionOutput | None = None
    error: str | None = None
    debug: Diagnostic | None = None
    engine: str | None = None

    def to_response(self) -> dict[str, Any]:
        """Return the JSON response body for this result.

        Example:
            ```python
            RunResult(success=False, error="boom").to_response()
            # {"success": False, "error": "boom"}
            ```
        """
        if self.success and self.output is not None:
            return {
                "success": True,
                "output": {
                    "result": self.output.result,
                    "stdout": self.output.stdout,
                    "executionTime": self.output.execution_time_ms,
                },
            }
        body: dict[str, Any] = {"success": False, "error": self.error or "Unknown error"}
        if self.debug is not None:
            body["debug"] = self.debug.to_debug()
        return body


def _validate(request: FunctionRequest) -> None:
    """Reject requests that cannot be executed.

    Example:
        ```python
        _validate(FunctionRequest(code="return 1"))
        ```
    """
    if not isinstance(request.code, str) or not request.code.strip():
        raise RequestValidationError("No code provided")
    if request.timeout_ms <= 0:
        raise RequestValidationError("timeout must be a positive number of milliseconds")


def _build_execution_request(request: FunctionRequest, resolved_code: str) -> ExecutionRequest:
    """Build the strategy request from a validated function request.

    Example:
        ```python
        req = _build_execution_request(FunctionRequest(code="return 1"), "return 1")
        ```
    """
    return ExecutionRequest(
        code=resolved_code,
        timeout_ms=request.timeout_ms,
        bindings={
            "params": request.params,
            "environment_variables": request.env_vars,
        },
        direct_bindings=dict(request.params) if request.is_custom_tool else {},
    )


async def _execute_bounded(engine: ExecutionEngine, request: ExecutionRequest) -> ExecutionOutcome:
    """Run one strategy call and cancel it when the deadline passes.

    Example:
        ```python
        outcome = await _execute_bounded(local_engine, ExecutionRequest(code="return 1", timeout_ms=5000))
        ```
    """
    return await asyncio.wait_for(engine.execute(request), timeout=request.timeout_ms / 1000)


def _timeout_error(timeout_ms: int) -> RawError:
    """Return the raw error reported when a script exceeds its deadline.

    Example:
        ```python
        _timeout_error(5000).message  # "Execution timed out after 5000ms"
        ```
    """
    return RawError(message=f"Execution timed out after {timeout_ms}ms", kind="TimeoutError")


async def run_function(
    request: FunctionRequest,
    *,
    local_engine: ExecutionEngine,
    remote_engine: ExecutionEngine | None = None,
    log: logging.Logger | None = None,
) -> RunResult:
    """Validate, resolve and execute one function request.

    The remote engine is tried first when given; any engine-level failure or
    deadline expiry there falls back to the local engine exactly once. Script
    errors are never retried and are turned into diagnostics.

    Example:
        ```python
        from fn_sandbox import FunctionRequest, LocalEngine, run_function
        result = await run_function(FunctionRequest(code="return 2 + 2"), local_engine=LocalEngine())
        ```
    """
    log = log or logger
    tag = f"[{request.request_id}]"
    log.info(
        "%s Function execution request",
        tag,
        extra={
            "request_id": request.request_id,
            "timeout_ms": request.timeout_ms,
            "has_params": bool(request.params),
            "env_var_count": len(request.env_vars),
            "is_custom_tool": request.is_custom_tool,
        },
    )

    try:
        _validate(request)
    except RequestValidationError as exc:
        log.warning("%s Rejected request: %s", tag, exc)
        return RunResult(success=False, error=str(exc))

    resolved_code = resolve(request.code, request.params, request.env_vars)
    execution_request = _build_execution_request(request, resolved_code)

    started = time.perf_counter()
    engine: ExecutionEngine = local_engine
    outcome: ExecutionOutcome | None = None
    failure: RawError | None = None

    if remote_engine is not None:
        log.info("%s Using %s sandbox for code execution", tag, remote_engine.name)
        try:
            outcome = await _execute_bounded(remote_engine, execution_request)
            engine = remote_engine
        except (StrategyError, TimeoutError) as exc:
            log.error(
                "%s Remote sandbox call failed, falling back to local VM: %s",
                tag,
                str(exc) or type(exc).__name__,
                extra={"request_id": request.request_id, "error": str(exc)},
            )
        except Exception as exc:
            log.error(
                "%s Remote sandbox call failed unexpectedly, falling back to local VM: %s",
                tag,
                str(exc) or type(exc).__name__,
                exc_info=True,
                extra={"request_id": request.request_id, "error": str(exc)},
            )
    else:
        log.info("%s Using local VM for code execution (no remote sandbox configured)", tag)

    if outcome is None:
        engine = local_engine
        try:
            outcome = await _execute_bounded(local_engine, execution_request)
        except TimeoutError:
            failure = _timeout_error(request.timeout_ms)
        except StrategyError as exc:
            failure = RawError(message=str(exc), kind="Error")

    execution_time_ms = int((time.perf_counter() - started) * 1000)

    if outcome is not None and outcome.error is None:
        log.info(
            "%s Function executed successfully using %s",
            tag,
            engine.name,
            extra={"request_id": request.request_id, "execution_time_ms": execution_time_ms},
        )
        return RunResult(
            success=True,
            output=FunctionOutput(
                result=outcome.result,
                stdout=outcome.logs,
                execution_time_ms=execution_time_ms,
            ),
            engine=engine.name,
        )

    raw_error = failure or (outcome.error if outcome is not None else None) or RawError("Unknown error")
    diagnostic = diagnose(raw_error, resolved_code.splitlines(), engine.wrapper_line_offset)
    log.error(
        "%s Function execution failed: %s",
        tag,
        diagnostic.message,
        extra={
            "request_id": request.request_id,
            "error_type": diagnostic.error_type,
            "line": diagnostic.line,
            "execution_time_ms": execution_time_ms,
        },
    )
    return RunResult(
        success=False,
        error=format_error(diagnostic),
        debug=diagnostic,
        engine=engine.name,
    )
