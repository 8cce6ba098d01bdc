from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import subprocess
import sys
from pathlib import Path

from ..policy import RunnerPolicy
from ..worker import WRAPPER_LINE_OFFSET
from .types import ExecutionOutcome, ExecutionRequest, LocalStrategyError, RawError

_PINNED_PACKAGE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+==[^=\s]+$")
_WORKER_ENV_KEYS = ("PATH", "LANG", "LC_ALL", "TZ", "SYSTEMROOT")


def _worker_path() -> Path:
    """Return the absolute path to the worker module file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _worker_env() -> dict[str, str]:
    """Build the reduced environment handed to the worker process.

    Example:
        ```python
        env = _worker_env()
        ```
    """
    env = {key: os.environ[key] for key in _WORKER_ENV_KEYS if key in os.environ}
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    return env


def validate_pinned_packages(packages: list[str] | None) -> list[str]:
    """Validate and normalize pinned package specs.

    Example:
        ```python
        pkgs = validate_pinned_packages(["pandas==2.2.2", "numpy==1.26.4"])
        ```
    """
    if not packages:
        return []
    normalized = sorted({pkg.strip() for pkg in packages if pkg.strip()})
    for pkg in normalized:
        if not _PINNED_PACKAGE_PATTERN.match(pkg):
            raise ValueError(
                "Package specs must be pinned as 'name==version'. "
                f"Invalid package: {pkg}"
            )
    return normalized


class LocalEngine:
    """Execute function code in a restricted worker process on this host.

    Without `venv_dir` the worker runs on `python_executable` (default: the
    current interpreter). With `venv_dir` a managed virtual environment is
    created or reused and pinned `packages` are installed into it.

    Example:
        ```python
        engine = LocalEngine(policy=RunnerPolicy(memory_limit_mb=128))
        ```
    """

    name = "local"
    wrapper_line_offset = WRAPPER_LINE_OFFSET

    def __init__(
        self,
        *,
        policy: RunnerPolicy | None = None,
        python_executable: str | None = None,
        venv_dir: str | None = None,
        venv_manager: str = "uv",
        packages: list[str] | None = None,
    ) -> None:
        """Initialize a local engine and prepare its environment.

        Example:
            ```python
            engine = LocalEngine(venv_dir="/tmp/fn_env", packages=["packaging==24.1"])
            ```
        """
        if venv_dir is not None and python_executable is not None:
            raise ValueError("Use either python_executable or venv_dir, not both")
        self._policy = policy or RunnerPolicy()
        self._python_executable = python_executable or sys.executable
        self._venv_dir = None
        self._venv_manager = venv_manager
        self._packages = validate_pinned_packages(packages)
        if venv_dir is not None:
            cleaned = venv_dir.strip()
            if not cleaned:
                raise ValueError("LocalEngine requires a non-empty 'venv_dir'")
            self._venv_dir = Path(cleaned).expanduser()
            self._prepare_environment()
        elif self._packages:
            raise ValueError("packages require a managed 'venv_dir'")

    @property
    def policy(self) -> RunnerPolicy:
        """Return the policy applied to every run.

        Example:
            ```python
            engine.policy.memory_limit_mb
            ```
        """
        return self._policy

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Execute one request in a fresh worker process.

        Cancelling the awaiting task kills the worker before the cancellation
        propagates, so a script never outlives its caller.

        Example:
            ```python
            outcome = await engine.execute(ExecutionRequest(code="return 1", timeout_ms=5000))
            ```
        """
        payload = {
            "code": request.code,
            "bindings": request.bindings,
            "direct_bindings": request.direct_bindings,
            "timeout_ms": request.timeout_ms,
            "policy": self._policy.to_payload(),
        }
        try:
            encoded = json.dumps(payload, default=str).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise LocalStrategyError(f"Bindings are not JSON serializable: {exc}") from exc

        try:
            proc = await asyncio.create_subprocess_exec(
                str(self._python_path()),
                str(_worker_path()),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_worker_env(),
            )
        except OSError as exc:
            raise LocalStrategyError(f"Failed to start worker: {exc}") from exc

        try:
            stdout, stderr = await proc.communicate(encoded)
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        return self._decode_reply(stdout, stderr, proc.returncode)

    def _decode_reply(self, stdout: bytes, stderr: bytes, returncode: int | None) -> ExecutionOutcome:
        """Turn raw worker output into an execution outcome.

        Example:
            ```python
            outcome = engine._decode_reply(b'{"ok": true, "result": 2, "logs": []}', b"", 0)
            ```
        """
        raw = stdout.decode("utf-8", "replace").strip()
        if not raw:
            detail = stderr.decode("utf-8", "replace").strip()
            if returncode is not None and returncode < 0:
                raise LocalStrategyError(f"Worker was terminated by signal {-returncode}")
            raise LocalStrategyError(
                f"Worker exited with code {returncode} without a reply" + (f": {detail}" if detail else "")
            )
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LocalStrategyError("Worker returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise LocalStrategyError("Worker returned invalid JSON")

        logs = [str(line) for line in parsed.get("logs") or []]
        if parsed.get("ok"):
            return ExecutionOutcome(result=parsed.get("result"), logs=logs)
        return ExecutionOutcome(
            logs=logs,
            error=RawError.from_payload(parsed.get("error") or {"message": "Unknown worker error"}),
        )

    def _prepare_environment(self) -> None:
        """Create/reuse venv and install pinned packages when needed.

        Example:
            ```python
            engine._prepare_environment()
            ```
        """
        assert self._venv_dir is not None
        self._venv_dir.mkdir(parents=True, exist_ok=True)
        py_path = self._python_path()
        if not py_path.exists():
            if self._venv_manager == "uv":
                cmd = ["uv", "venv", str(self._venv_dir)]
            elif self._venv_manager == "python":
                cmd = [sys.executable, "-m", "venv", str(self._venv_dir)]
            else:
                raise ValueError("venv_manager must be either 'uv' or 'python'")
            created = subprocess.run(cmd, capture_output=True, text=True, check=False)
            if created.returncode != 0:
                raise RuntimeError(
                    f"Failed to create venv with {self._venv_manager}: {created.stderr.strip()}"
                )
        if self._packages:
            marker = self._venv_dir / ".fn_sandbox_packages.txt"
            desired = "\n".join(self._packages) + "\n"
            if not marker.exists() or marker.read_text(encoding="utf-8") != desired:
                installed = subprocess.run(
                    [str(py_path), "-m", "pip", "install", *self._packages],
                    capture_output=True,
                    text=True,
                    check=False,
                )
                if installed.returncode != 0:
                    raise RuntimeError(f"Failed to install local packages: {installed.stderr.strip()}")
                marker.write_text(desired, encoding="utf-8")

    def _python_path(self) -> Path:
        """Return the interpreter that runs the worker.

        Example:
            ```python
            py = engine._python_path()
            ```
        """
        if self._venv_dir is not None:
            return self._venv_dir / "bin" / "python"
        return Path(self._python_executable)
