from .diagnostics import Diagnostic, diagnose, format_error
from .execution.local_engine import LocalEngine
from .execution.remote_engine import RemoteEngine
from .policy import RunnerPolicy
from .runner import FunctionRequest, RunResult, run_function
from .templates import resolve

__all__ = [
    "Diagnostic",
    "FunctionRequest",
    "LocalEngine",
    "RemoteEngine",
    "RunResult",
    "RunnerPolicy",
    "diagnose",
    "format_error",
    "resolve",
    "run_function",
]
