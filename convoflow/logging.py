"""Logger factory for the convoflow namespace, backed by dd-logging.

Library modules only call ``get_logger("<module>")`` and never attach
handlers; the application decides where records go.  The ``convoflow`` CLI
calls ``setup_logging(<command>)`` once per invocation (``--no-log`` calls
``disable_logging()`` instead), which writes ``logs/<command>-<timestamp>.log``.

Loggers in use: ``convoflow.{graph, store, nodes, interpreter, correlator,
runner, db, capabilities, llm, cli}``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from dd_logging import (
    disable_logging as _disable,
    get_logger as _get,
    setup_logging as _setup,
)

_ROOT = "convoflow"


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the convoflow namespace.

    Parameters
    ----------
    name :
        Module name, e.g. ``"correlator"`` → ``convoflow.correlator``.
    """
    return _get(name, _ROOT)


def setup_logging(
    run_name: str = "convoflow",
    *,
    log_level: str = "info",
    log_dir: str | Path | None = None,
    console: bool = False,
) -> Path:
    """Attach a timestamped FileHandler to the convoflow root logger.

    Parameters
    ----------
    run_name :
        Log filename prefix; the CLI passes the command name (``"chat"``).
    log_level :
        ``"debug"`` | ``"info"`` | ``"warning"`` | ``"error"``.
    log_dir :
        Directory for log files.  Defaults to ``./logs`` relative to CWD.
    console :
        Also attach a StreamHandler (useful for CLI --verbose mode).

    Returns
    -------
    Path
        Absolute path of the created log file.
    """
    return _setup(
        run_name,
        root_name=_ROOT,
        log_level=log_level,
        log_dir=log_dir or (Path.cwd() / "logs"),
        console=console,
    )


def disable_logging() -> None:
    """Remove all handlers from the convoflow root logger (silent mode)."""
    _disable(_ROOT)
