"""Terminal output with strict stdout/stderr discipline.

Follows `clig.dev <https://clig.dev/>`_ conventions:

* **stdout** -- the credential or parsed outcome only, so
  ``TOKEN=$(iglogin login ...)`` works.
* **stderr** -- all diagnostics (progress, status, warnings, errors).
* **Colour control** -- respects ``NO_COLOR``, ``TERM=dumb`` and the
  ``--no-color`` CLI flag.

:class:`OutputManager` holds the preferences and the two Rich consoles;
module-level helpers (:func:`info`, :func:`error`, ...) delegate to the
instance installed with :func:`set_output` by
:func:`~iglogin.app.main_callback`.
"""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Optional

from rich.console import Console
from rich.syntax import Syntax


class OutputManager:
    """Route data to stdout and diagnostics to stderr.

    Args:
        json_output: Emit data as compact JSON instead of Rich-highlighted
            or plain text.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential informational messages on stderr.
        verbose: Show debug messages on stderr.
    """

    def __init__(
        self,
        json_output: bool = False,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._json = json_output
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose
        self._rich = _is_tty() and not self._no_color and not json_output

        self._stdout = Console(file=sys.stdout, no_color=self._no_color)
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    # ------------------------------------------------------------------ #
    # Data output (stdout)
    # ------------------------------------------------------------------ #

    def print_data(self, data: Any) -> None:
        """Write *data* to stdout.

        Strings are printed verbatim; mappings and lists as JSON
        (syntax-highlighted on an interactive terminal).
        """
        if isinstance(data, str):
            print(data, file=sys.stdout, flush=True)
            return
        if self._json:
            print(json.dumps(data, ensure_ascii=False, default=str), file=sys.stdout, flush=True)
            return
        text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        if self._rich:
            self._stdout.print(Syntax(text, "json", theme="monokai", word_wrap=True))
        else:
            print(text, file=sys.stdout, flush=True)

    # ------------------------------------------------------------------ #
    # Diagnostics (stderr)
    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        """Informational message. Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diag(message, message)

    def success(self, message: str) -> None:
        """Green success message. Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diag(message, f"[green]{message}[/green]")

    def warning(self, message: str) -> None:
        """Yellow warning. NOT suppressed by ``--quiet``."""
        self._diag(f"Warning: {message}", f"[yellow]Warning:[/yellow] {message}")

    def error(self, message: str) -> None:
        """Bold-red error. Never suppressed."""
        self._diag(f"Error: {message}", f"[bold red]Error:[/bold red] {message}")

    def debug(self, message: str) -> None:
        """Debug message, only with ``--verbose``."""
        if self._verbose:
            self._diag(f"[debug] {message}", f"[dim]\\[debug] {message}[/dim]")

    def _diag(self, plain: str, markup: str) -> None:
        if self._no_color:
            print(plain, file=sys.stderr, flush=True)
        else:
            self._stderr.print(markup)


def _is_tty() -> bool:
    """Check if stdout is a TTY."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when ``NO_COLOR`` is set (any value) or ``TERM=dumb``."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    return os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Global output instance (set during app startup)
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the global :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Drop the global instance; used between tests."""
    global _output
    _output = None


def print_data(data: Any) -> None:
    get_output().print_data(data)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def error(message: str) -> None:
    get_output().error(message)


def debug(message: str) -> None:
    get_output().debug(message)
