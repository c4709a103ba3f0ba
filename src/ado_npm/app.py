"""Typer application and CLI entry point for ado-npm.

This module wires together the top-level Typer application and registers
the built-in commands (``auth``, ``add``, ``set``, ``upstream-sync``) along
with their short aliases.

The root callback is the composition root: it installs the
:class:`~ado_npm.output.OutputManager`, configures logging, and creates the
single :class:`~ado_npm.store.StoreRegistry` that every command shares via
``ctx.obj["stores"]``.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. Errors derived from
:class:`~ado_npm.exceptions.AdoNpmError` are printed and mapped to their
exit code; anything else is written to a crash log.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from ado_npm import __version__
from ado_npm.commands.add import add_command
from ado_npm.commands.auth import auth_command
from ado_npm.commands.set import set_command
from ado_npm.commands.upstream_sync import upstream_sync_command
from ado_npm.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INTERRUPTED
from ado_npm.store import StoreRegistry


app = typer.Typer(
    name="ado-npm",
    help="Authorize npm registries hosted on Azure DevOps.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #

_PASSTHROUGH = {"allow_extra_args": True, "ignore_unknown_options": True}

app.command("auth", help="Authorize ADO npm registries.")(auth_command)
app.command("login", hidden=True)(auth_command)
app.command("l", hidden=True)(auth_command)
app.command("add", help="Install global packages.", context_settings=_PASSTHROUGH)(add_command)
app.command("install", hidden=True, context_settings=_PASSTHROUGH)(add_command)
app.command("i", hidden=True, context_settings=_PASSTHROUGH)(add_command)
app.command("set", help="Set default options.")(set_command)
app.command("config", hidden=True)(set_command)
app.command(
    "upstream-sync", help="Add a recent upstream package to an ADO npm registry."
)(upstream_sync_command)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"ado-npm {__version__}")
        raise typer.Exit()


_log_handler: logging.Handler | None = None


def _configure_logging(verbose: bool, console: Console) -> None:
    """Route ``ado_npm`` log records to stderr through Rich.

    WARNING and above are shown by default; ``--verbose`` lowers the level
    to DEBUG. Calling this again replaces the previously installed handler.
    """
    global _log_handler
    logger = logging.getLogger("ado_npm")
    if _log_handler is not None:
        logger.removeHandler(_log_handler)
    _log_handler = RichHandler(
        console=console,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    logger.addHandler(_log_handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~ado_npm.output.OutputManager` and
    logging from CLI flags, and stores the shared
    :class:`~ado_npm.store.StoreRegistry` in ``ctx.obj``.

    Args:
        ctx: Typer invocation context.
        version: If ``True``, print the version string and exit.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential diagnostic output.
        verbose: Enable debug-level diagnostic output.
    """
    from ado_npm.output import OutputManager, set_output

    output = OutputManager(no_color=no_color, quiet=quiet, verbose=verbose)
    set_output(output)
    _configure_logging(verbose, output.stderr_console)

    ctx.ensure_object(dict)
    ctx.obj["stores"] = StoreRegistry()
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path.

    Args:
        exc: The unhandled exception to log.

    Returns:
        Absolute path to the written crash log file.
    """
    from ado_npm.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``ado-npm`` console script.

    Unhandled :class:`~ado_npm.exceptions.AdoNpmError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce
    a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as exc:
        from ado_npm.exceptions import AdoNpmError
        from ado_npm.output import error

        if isinstance(exc, AdoNpmError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)


if __name__ == "__main__":
    main()
