"""Console logging for maestro: tagged, themed lines via Rich."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.theme import Theme

THEME = Theme(
    {
        "log.info": "blue",
        "log.ok": "green",
        "log.warn": "yellow",
        "log.error": "bold red",
        "log.debug": "dim",
    }
)

console = Console(highlight=False, theme=THEME)
_err_console = Console(highlight=False, stderr=True, theme=THEME)

_verbose = False


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def _tagged(target: Console, style: str, tag: str, msg: str) -> None:
    target.print(f"[{style}]\\[{tag}][/{style}] {escape(msg)}")


def info(msg: str) -> None:
    _tagged(console, "log.info", "INFO", msg)


def success(msg: str) -> None:
    _tagged(console, "log.ok", "OK", msg)


def warn(msg: str) -> None:
    _tagged(console, "log.warn", "WARN", msg)


def error(msg: str) -> None:
    _tagged(_err_console, "log.error", "ERROR", msg)


def debug(msg: str) -> None:
    if _verbose:
        console.print(f"\\[DEBUG] {escape(msg)}", style="log.debug")


def exception() -> None:
    """Print the traceback being handled, in verbose mode only."""
    if _verbose:
        _err_console.print_exception()
