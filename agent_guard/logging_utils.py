from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# --- Logging ---
def configure_logging(level: int = logging.INFO, console: Optional[Console] = None) -> None:
    """Attach a RichHandler to the `agent_guard` logger. Safe to call more than once."""
    logger = logging.getLogger("agent_guard")
    logger.setLevel(level)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_agent_guard_configured", False):
        return

    handler = RichHandler(console=console or Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    setattr(logger, "_agent_guard_configured", True)
    logger.debug("Logging initialized at %s", logging.getLevelName(level))
