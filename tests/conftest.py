"""Shared test fixtures for ado-npm.

Provides an isolated home directory (so ``~/.npmrc`` and ``~/.ado-npm``
are never the real ones), a fresh :class:`StoreRegistry`, output and
logging state management, and a CLI runner. These fixtures are
automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from ado_npm.output import OutputFormat, OutputManager, reset_output, set_output
from ado_npm.store import StoreRegistry


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_global_state() -> None:
    """Reset the global OutputManager and the ``ado_npm`` logger.

    The OutputManager and the Rich log handler installed by the root
    callback cache references to sys.stdout/sys.stderr at creation time.
    When Typer's CliRunner redirects those streams during a test and the
    test finishes, the cached references become stale.
    """
    yield
    reset_output()
    logger = logging.getLogger("ado_npm")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Home directory isolation
# ---------------------------------------------------------------------------


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point ``Path.home()`` at a temporary directory.

    Also clears the ``ADO_NPM_*`` environment variables and changes the
    working directory to a project folder inside the temporary home.

    Returns:
        The temporary home directory.
    """
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    monkeypatch.setenv("USERPROFILE", str(home_dir))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ("ADO_NPM_REGISTRY", "ADO_NPM_TENANT"):
        monkeypatch.delenv(var, raising=False)

    project = home_dir / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return home_dir


@pytest.fixture
def stores() -> StoreRegistry:
    """A fresh store registry, as created by the root CLI callback."""
    return StoreRegistry()


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a quiet, plain-text output manager for the test."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
