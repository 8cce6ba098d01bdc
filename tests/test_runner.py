import asyncio
import logging
from typing import Any

import pytest

from fn_sandbox.execution.types import (
    ExecutionOutcome,
    ExecutionRequest,
    LocalStrategyError,
    RawError,
    RemoteStrategyError,
)
from fn_sandbox.runner import FunctionRequest, RunResult, run_function


class _FakeEngine:
    def __init__(
        self,
        name: str,
        *,
        outcome: ExecutionOutcome | None = None,
        raises: Exception | None = None,
        delay: float = 0.0,
        wrapper_line_offset: int = 3,
    ) -> None:
        self.name = name
        self.wrapper_line_offset = wrapper_line_offset
        self.outcome = outcome or ExecutionOutcome(result=name)
        self.raises = raises
        self.delay = delay
        self.requests: list[ExecutionRequest] = []

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        return self.outcome


def _run(request: FunctionRequest, **kwargs: Any) -> RunResult:
    return asyncio.run(run_function(request, **kwargs))


def test_remote_is_used_when_configured() -> None:
    local = _FakeEngine("local")
    remote = _FakeEngine("remote")
    result = _run(FunctionRequest(code="return 1"), local_engine=local, remote_engine=remote)
    assert result.success
    assert result.engine == "remote"
    assert result.output is not None and result.output.result == "remote"
    assert local.requests == []


def test_remote_failure_falls_back_to_local_once(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    local = _FakeEngine("local")
    remote = _FakeEngine("remote", raises=RemoteStrategyError("Remote sandbox returned HTTP 503"))

    result = _run(
        FunctionRequest(code="return <x>", params={"x": 5}),
        local_engine=local,
        remote_engine=remote,
    )

    assert result.success
    assert result.engine == "local"
    assert len(remote.requests) == 1
    assert len(local.requests) == 1
    assert local.requests[0].code == remote.requests[0].code == "return 5"
    assert "falling back to local VM" in caplog.text
    assert "HTTP 503" in caplog.text


def test_remote_deadline_falls_back_to_local() -> None:
    local = _FakeEngine("local")
    remote = _FakeEngine("remote", delay=5)
    result = _run(FunctionRequest(code="return 1", timeout_ms=50), local_engine=local, remote_engine=remote)
    assert result.success
    assert result.engine == "local"


def test_remote_script_error_is_not_retried() -> None:
    local = _FakeEngine("local")
    remote = _FakeEngine(
        "remote",
        wrapper_line_offset=1,
        outcome=ExecutionOutcome(
            error=RawError(
                "missing is not defined",
                "ReferenceError",
                "ReferenceError: missing is not defined\n    at user-function.js:2:8",
            )
        ),
    )

    result = _run(
        FunctionRequest(code="a = 1\nreturn missing"),
        local_engine=local,
        remote_engine=remote,
    )

    assert not result.success
    assert local.requests == []
    assert result.debug is not None
    assert result.debug.line == 2
    assert result.debug.column == 8
    assert result.error == (
        "Reference Error\nLine 2\nreturn missing\nmissing is not defined\n"
        "(Check that the variable is defined or passed in params)"
    )


def test_local_only_without_remote(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    local = _FakeEngine("local")
    result = _run(FunctionRequest(code="return 1"), local_engine=local)
    assert result.engine == "local"
    assert "no remote sandbox configured" in caplog.text
    assert "falling back" not in caplog.text


def test_empty_code_is_rejected_without_execution() -> None:
    local = _FakeEngine("local")
    for code in ("", "   \n"):
        result = _run(FunctionRequest(code=code), local_engine=local)
        assert not result.success
        assert result.error == "No code provided"
        assert result.debug is None
        assert result.to_response() == {"success": False, "error": "No code provided"}
    assert local.requests == []


def test_request_log_carries_timeout_metadata(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    log = logging.getLogger("tests.function_execution")
    _run(FunctionRequest(code="return 1", request_id="abc123"), local_engine=_FakeEngine("local"), log=log)

    records = [r for r in caplog.records if "Function execution request" in r.getMessage()]
    assert len(records) == 1
    assert records[0].name == "tests.function_execution"
    assert records[0].getMessage() == "[abc123] Function execution request"
    assert records[0].timeout_ms == 5000
    assert records[0].request_id == "abc123"


def test_bindings_and_custom_tool_parameters() -> None:
    local = _FakeEngine("local")
    _run(
        FunctionRequest(
            code="return location",
            params={"location": "Paris"},
            env_vars={"API_KEY": "k"},
            is_custom_tool=True,
        ),
        local_engine=local,
    )
    sent = local.requests[0]
    assert sent.bindings == {"params": {"location": "Paris"}, "environment_variables": {"API_KEY": "k"}}
    assert sent.direct_bindings == {"location": "Paris"}

    plain = _FakeEngine("local")
    _run(FunctionRequest(code="return 1", params={"location": "Paris"}), local_engine=plain)
    assert plain.requests[0].direct_bindings == {}


def test_local_deadline_reports_timeout() -> None:
    local = _FakeEngine("local", delay=5)
    result = _run(FunctionRequest(code="return 1", timeout_ms=50), local_engine=local)
    assert not result.success
    assert result.engine == "local"
    assert result.error == "Execution timed out after 50ms"
    assert result.to_response() == {
        "success": False,
        "error": "Execution timed out after 50ms",
        "debug": {"errorType": "TimeoutError"},
    }


def test_local_strategy_error_becomes_failure() -> None:
    local = _FakeEngine("local", raises=LocalStrategyError("Worker returned invalid JSON"))
    result = _run(FunctionRequest(code="return 1"), local_engine=local)
    assert not result.success
    assert result.error == "Worker returned invalid JSON"


def test_success_response_shape() -> None:
    local = _FakeEngine("local", outcome=ExecutionOutcome(result={"n": 4}, logs=["step 1"]))
    body = _run(FunctionRequest(code="return 4"), local_engine=local).to_response()
    assert body["success"] is True
    assert body["output"]["result"] == {"n": 4}
    assert body["output"]["stdout"] == ["step 1"]
    assert isinstance(body["output"]["executionTime"], int)


def test_unexpected_remote_exception_falls_back_to_local(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    local = _FakeEngine("local")
    remote = _FakeEngine("remote", raises=TypeError("'int' object is not iterable"))

    result = _run(FunctionRequest(code="return 1"), local_engine=local, remote_engine=remote)

    assert result.success
    assert result.engine == "local"
    assert len(local.requests) == 1
    assert "falling back to local VM" in caplog.text
