from __future__ import annotations

import argparse
import asyncio
import json
import logging
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.syntax import Syntax
from rich_argparse import RawTextRichHelpFormatter
from fn_sandbox.config import ServiceSettings, build_engines
from fn_sandbox.runner import FunctionRequest, run_function
from fn_sandbox.templates import find_placeholders, resolve

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m fnx")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _configure_logging(verbose: bool) -> None:
    """Route library logging through a Rich handler.

    Example:
        ```python
        _configure_logging(verbose=True)
        ```
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _parse_env_pairs(pairs: Sequence[str] | None) -> dict[str, str]:
    """Parse repeated `KEY=VALUE` options into a mapping.

    Example:
        ```python
        _parse_env_pairs(["API_KEY=secret"])  # {"API_KEY": "secret"}
        ```
    """
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got '{pair}'")
        env[key] = value
    return env


def _parse_params(raw: str | None) -> dict[str, Any]:
    """Parse the `--params` JSON object.

    Example:
        ```python
        _parse_params('{"email": {"from": "A <a@x.com>"}}')
        ```
    """
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("--params must be a JSON object")
    return value


def _add_input_arguments(parser: argparse.ArgumentParser) -> None:
    """Attach the script/params/env arguments shared by `run` and `resolve`.

    Example:
        ```python
        _add_input_arguments(run_cmd)
        ```
    """
    parser.add_argument("file", help="Path to a file holding the function body.")
    parser.add_argument(
        "--params",
        help=(
            "JSON object of parameters for <name> placeholders.\n"
            "Example: --params '{\"email\": {\"subject\": \"Hi\"}}'"
        ),
    )
    parser.add_argument(
        "--env",
        action="append",
        metavar="KEY=VALUE",
        help="Environment variable for {{KEY}} placeholders (repeatable).",
    )


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    """Attach the `--config` settings-file option.

    Example:
        ```python
        _add_config_argument(serve_cmd)
        ```
    """
    parser.add_argument(
        "--config",
        help=(
            "Path to a TOML settings file.\n"
            "Defaults to $FN_SANDBOX_CONFIG when set."
        ),
    )


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for fn-sandbox.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m fnx",
        description=(
            "fn-sandbox CLI\n"
            "Run function bodies in the sandbox, preview placeholder resolution,\n"
            "or serve the HTTP execution endpoint."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m fnx run script.py --params '{\"x\": 9}'\n"
            "  python -m fnx run tool.py --params '{\"location\": \"Paris\"}' --custom-tool\n"
            "  python -m fnx resolve script.py --env API_KEY=secret\n"
            "  python -m fnx serve --port 3000\n\n"
            "Remote Sandbox:\n"
            "  FN_SANDBOX_REMOTE_URL=https://sandbox.example.com \\\n"
            "  FN_SANDBOX_REMOTE_API_KEY=sk-... python -m fnx serve"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Execute a function body and print its result.",
        description=(
            "Execute a function body through the same pipeline as the HTTP endpoint.\n"
            "Uses the remote sandbox when configured, else the local worker."
        ),
        epilog=(
            "Examples:\n"
            "  python -m fnx run script.py\n"
            "  python -m fnx run script.py --timeout 10000 --env API_KEY=secret"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_input_arguments(run_cmd)
    run_cmd.add_argument(
        "--timeout",
        type=int,
        help="Timeout in milliseconds (default: configured default, 5000).",
    )
    run_cmd.add_argument(
        "--custom-tool",
        action="store_true",
        help="Also expose params as top-level variables.",
    )
    _add_config_argument(run_cmd)

    resolve_cmd = sub.add_parser(
        "resolve",
        help="Print the source after placeholder resolution.",
        description=(
            "Resolve {{ENV}} and <param> placeholders without executing anything.\n"
            "Reports referenced names that had no value."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_input_arguments(resolve_cmd)

    serve_cmd = sub.add_parser(
        "serve",
        help="Serve the HTTP execution endpoint.",
        description="Run POST /api/function/execute with uvicorn.",
        formatter_class=_HELP_FORMATTER,
    )
    serve_cmd.add_argument("--host", help="Bind address (default: from settings, 127.0.0.1).")
    serve_cmd.add_argument("--port", type=int, help="Bind port (default: from settings, 3000).")
    _add_config_argument(serve_cmd)

    return parser


def _print_run_result(result: Any) -> None:
    """Render a run result as Rich panels.

    Example:
        ```python
        _print_run_result(run_result)
        ```
    """
    if result.success and result.output is not None:
        if result.output.stdout:
            _CONSOLE.print(
                Panel.fit("\n".join(result.output.stdout), title="stdout", border_style="cyan")
            )
        _CONSOLE.print(
            Panel.fit(
                Pretty(result.output.result),
                title=f"Result ({result.output.execution_time_ms}ms via {result.engine})",
                border_style="green",
            )
        )
        return
    _CONSOLE.print(Panel.fit(result.error or "Unknown error", title="Error", border_style="red"))
    if result.debug is not None:
        _CONSOLE.print(Panel.fit(Pretty(result.debug.to_debug()), title="Debug", border_style="yellow"))


async def _run_script(args: argparse.Namespace, settings: ServiceSettings, code: str) -> Any:
    """Execute a script through the orchestrator and close engines after.

    Example:
        ```python
        result = asyncio.run(_run_script(args, ServiceSettings(), "return 1"))
        ```
    """
    local, remote = build_engines(settings)
    try:
        return await run_function(
            FunctionRequest(
                code=code,
                params=_parse_params(args.params),
                env_vars=_parse_env_pairs(args.env),
                timeout_ms=settings.clamp_timeout(args.timeout),
                is_custom_tool=args.custom_tool,
            ),
            local_engine=local,
            remote_engine=remote,
        )
    finally:
        if remote is not None:
            await remote.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `fnx` CLI command handler.

    Example:
        ```python
        code = main(["resolve", "script.py", "--env", "API_KEY=secret"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)

    if args.command == "resolve":
        try:
            code = Path(args.file).read_text(encoding="utf-8")
            params = _parse_params(args.params)
            env_vars = _parse_env_pairs(args.env)
        except (OSError, ValueError) as exc:
            _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {exc}", border_style="red"))
            return 2
        resolved = resolve(code, params, env_vars)
        _CONSOLE.print(Syntax(resolved, "python", line_numbers=True))
        report = find_placeholders(code)
        missing_env = [name for name in report.env_names if name not in env_vars]
        missing_params = [name for name in report.param_names if name not in params]
        if missing_env or missing_params:
            _CONSOLE.print(
                Panel.fit(
                    Pretty({"env": missing_env, "params": missing_params}),
                    title="Unresolved placeholders",
                    border_style="yellow",
                )
            )
        return 0

    try:
        settings = ServiceSettings.load(args.config)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {exc}", border_style="red"))
        return 2

    if args.command == "run":
        try:
            code = Path(args.file).read_text(encoding="utf-8")
            result = asyncio.run(_run_script(args, settings, code))
        except (OSError, ValueError) as exc:
            _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {exc}", border_style="red"))
            return 2
        _print_run_result(result)
        return 0 if result.success else 1
    if args.command == "serve":
        import uvicorn

        from fn_sandbox.api import create_app

        uvicorn.run(
            create_app(settings),
            host=args.host or settings.host,
            port=args.port or settings.port,
        )
        return 0

    parser.error("Unhandled command")
    return 2
