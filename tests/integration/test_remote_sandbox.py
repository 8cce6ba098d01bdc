import asyncio
import os

import pytest

from fn_sandbox import FunctionRequest, LocalEngine, RemoteEngine, run_function


def _remote_ready() -> bool:
    if not os.getenv("FN_SANDBOX_REMOTE_URL") or not os.getenv("FN_SANDBOX_REMOTE_API_KEY"):
        return False
    return os.getenv("RUN_REMOTE_TESTS") == "1"


pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not _remote_ready(), reason="Remote sandbox integration tests disabled"),
]


def _run(code: str, **kwargs):
    async def _go():
        remote = RemoteEngine(
            base_url=os.environ["FN_SANDBOX_REMOTE_URL"],
            api_key=os.environ["FN_SANDBOX_REMOTE_API_KEY"],
        )
        try:
            return await run_function(
                FunctionRequest(code=code, **kwargs),
                local_engine=LocalEngine(),
                remote_engine=remote,
            )
        finally:
            await remote.aclose()

    return asyncio.run(_go())


def test_remote_sandbox_returns_result() -> None:
    result = _run("return 'Hello World'")
    assert result.success
    assert result.output is not None
    assert result.output.result == "Hello World"


def test_remote_sandbox_reports_script_errors() -> None:
    result = _run("a = 1\nreturn a + missing_value")
    assert not result.success
    assert result.debug is not None
