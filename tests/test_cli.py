from __future__ import annotations

import io
from pathlib import Path

import pytest

from fn_sandbox.diagnostics import Diagnostic
from fn_sandbox.runner import FunctionOutput, FunctionRequest, RunResult
from fnx import cli


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FN_SANDBOX_CONFIG",
        "FN_SANDBOX_REMOTE_URL",
        "FN_SANDBOX_REMOTE_API_KEY",
        "FN_SANDBOX_DEFAULT_TIMEOUT_MS",
    ):
        monkeypatch.delenv(name, raising=False)


def _script(tmp_path: Path, code: str) -> str:
    path = tmp_path / "script.py"
    path.write_text(code, encoding="utf-8")
    return str(path)


def test_cli_resolve_prints_source_and_unresolved_names(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    script = _script(tmp_path, "key = '{{API_KEY}}'\nreturn <subject>")
    code = cli.main(["resolve", script, "--env", "API_KEY=secret"])
    output = capsys.readouterr().out
    assert code == 0
    assert "key = 'secret'" in output
    assert "Unresolved placeholders" in output
    assert "subject" in output


def test_cli_run_success(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[FunctionRequest] = []

    async def _fake_run_function(request, *, local_engine, remote_engine=None, log=None):
        seen.append(request)
        return RunResult(
            success=True,
            output=FunctionOutput(result={"answer": 42}, stdout=["working"], execution_time_ms=12),
            engine="local",
        )

    monkeypatch.setattr(cli, "run_function", _fake_run_function)
    script = _script(tmp_path, "return <x>")
    code = cli.main(
        ["run", script, "--params", '{"x": 42}', "--env", "REGION=eu", "--timeout", "900", "--custom-tool"]
    )
    output = capsys.readouterr().out
    assert code == 0
    assert "answer" in output
    assert "working" in output
    assert seen[0].params == {"x": 42}
    assert seen[0].env_vars == {"REGION": "eu"}
    assert seen[0].timeout_ms == 900
    assert seen[0].is_custom_tool is True


def test_cli_run_failure_exit_code(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _fake_run_function(request, *, local_engine, remote_engine=None, log=None):
        diagnostic = Diagnostic(
            message="name 'y' is not defined",
            error_type="NameError",
            label="Reference Error",
            line=1,
            line_content="return y",
        )
        return RunResult(success=False, error="Reference Error\nLine 1", debug=diagnostic, engine="local")

    monkeypatch.setattr(cli, "run_function", _fake_run_function)
    code = cli.main(["run", _script(tmp_path, "return y")])
    output = capsys.readouterr().out
    assert code == 1
    assert "Reference Error" in output
    assert "NameError" in output


def test_cli_run_executes_with_local_worker(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", _script(tmp_path, "print('hi')\nreturn 6 * 7")])
    output = capsys.readouterr().out
    assert code == 0
    assert "42" in output


def test_cli_rejects_bad_params(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["resolve", _script(tmp_path, "return 1"), "--params", "[1, 2]"])
    output = capsys.readouterr().out
    assert code == 2
    assert "--params must be a JSON object" in output


def test_cli_rejects_bad_env_pair(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["resolve", _script(tmp_path, "return 1"), "--env", "NOVALUE"])
    assert code == 2
    assert "Expected KEY=VALUE" in capsys.readouterr().out


def test_cli_missing_file(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["run", "/nonexistent/script.py"])
    assert code == 2
    assert "Error:" in capsys.readouterr().out


def test_cli_subcommand_help(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["run", "--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Execute a function body through the same pipeline" in output


def test_cli_top_level_help_examples(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])
    output = capsys.readouterr().out
    assert exc.value.code == 0
    assert "Quick Examples:" in output
    assert "python -m fnx resolve script.py" in output
    assert "Remote Sandbox:" in output


def test_cli_print_help_writes_to_requested_stream(capsys: pytest.CaptureFixture[str]) -> None:
    parser = cli.build_parser()
    buffer = io.StringIO()
    parser.print_help(file=buffer)
    output = capsys.readouterr().out
    assert output == ""
    help_text = buffer.getvalue()
    assert "Usage:" in help_text
    assert "fn-sandbox CLI" in help_text
