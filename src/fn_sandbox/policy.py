from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

DEFAULT_MODE = "restrict"
DEFAULT_MEMORY_LIMIT_MB = 256
DEFAULT_MAX_OUTPUT_KB = 128
DEFAULT_BLOCKED_IMPORTS = [
    "os",
    "sys",
    "subprocess",
    "socket",
    "ctypes",
    "importlib",
    "builtins",
    "shutil",
    "signal",
    "multiprocessing",
    "pty",
]
DEFAULT_BLOCKED_BUILTINS = ["eval", "exec", "open", "compile", "breakpoint", "input"]


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        blocked = _list_of_str(["os", "subprocess"], "blocked_imports")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


@dataclass(slots=True)
class RunnerPolicy:
    """Guardrails applied by the local worker to untrusted function code.

    Example:
        ```python
        policy = RunnerPolicy(memory_limit_mb=128, blocked_imports=["os"])
        ```
    """

    mode: str = DEFAULT_MODE
    memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB
    max_output_kb: int = DEFAULT_MAX_OUTPUT_KB
    allowed_imports: list[str] = field(default_factory=list)
    blocked_imports: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_IMPORTS.copy())
    allowed_builtins: list[str] = field(default_factory=list)
    blocked_builtins: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_BUILTINS.copy())
    allowed_globals: list[str] = field(default_factory=list)
    blocked_globals: list[str] = field(default_factory=list)
    extra_globals: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate mode and limits after dataclass initialization.

        Example:
            ```python
            RunnerPolicy(mode="restrict")
            ```
        """
        if self.mode not in {"allow", "restrict"}:
            raise ValueError("mode must be 'allow' or 'restrict'")
        if self.memory_limit_mb <= 0:
            raise ValueError("memory_limit_mb must be positive")
        if self.max_output_kb <= 0:
            raise ValueError("max_output_kb must be positive")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "RunnerPolicy":
        """Create a policy from an already-parsed `[policy]` table.

        Example:
            ```python
            policy = RunnerPolicy.from_mapping({"mode": "allow", "allowed_imports": ["math"]})
            ```
        """
        extra_globals_raw = raw.get("extra_globals", {})
        if not isinstance(extra_globals_raw, dict):
            raise ValueError("'extra_globals' must be a TOML table")
        return cls(
            mode=str(raw.get("mode", DEFAULT_MODE)),
            memory_limit_mb=int(raw.get("memory_limit_mb", DEFAULT_MEMORY_LIMIT_MB)),
            max_output_kb=int(raw.get("max_output_kb", DEFAULT_MAX_OUTPUT_KB)),
            allowed_imports=_list_of_str(raw.get("allowed_imports", []), "allowed_imports"),
            blocked_imports=_list_of_str(
                raw.get("blocked_imports", DEFAULT_BLOCKED_IMPORTS), "blocked_imports"
            ),
            allowed_builtins=_list_of_str(
                raw.get("allowed_builtins", []), "allowed_builtins"
            ),
            blocked_builtins=_list_of_str(
                raw.get("blocked_builtins", DEFAULT_BLOCKED_BUILTINS), "blocked_builtins"
            ),
            allowed_globals=_list_of_str(raw.get("allowed_globals", []), "allowed_globals"),
            blocked_globals=_list_of_str(raw.get("blocked_globals", []), "blocked_globals"),
            extra_globals=dict(extra_globals_raw),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerPolicy":
        """Create a policy instance from a TOML file.

        The file may hold the fields at top level or under a `[policy]` table.

        Example:
            ```python
            policy = RunnerPolicy.from_file("/tmp/policy.toml")
            ```
        """
        raw = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
        policy_obj = raw.get("policy", raw)
        if not isinstance(policy_obj, dict):
            raise ValueError("Policy config must be a TOML table")
        return cls.from_mapping(policy_obj)

    def to_payload(self) -> dict[str, Any]:
        """Serialize the policy into the JSON shape the worker reads.

        Example:
            ```python
            payload = RunnerPolicy().to_payload()
            ```
        """
        return {
            "mode": self.mode,
            "memory_limit_mb": self.memory_limit_mb,
            "max_output_kb": self.max_output_kb,
            "allowed_imports": self.allowed_imports,
            "blocked_imports": self.blocked_imports,
            "allowed_builtins": self.allowed_builtins,
            "blocked_builtins": self.blocked_builtins,
            "allowed_globals": self.allowed_globals,
            "blocked_globals": self.blocked_globals,
            "extra_globals": self.extra_globals,
        }
