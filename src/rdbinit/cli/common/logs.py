"""Logging setup for the CLI.

Library modules log through `logging.getLogger(__name__)`; the CLI routes
those records to the shared rich console.
"""

import logging

from rich.logging import RichHandler

from rdbinit.cli.common.output import console


def setup_logging(verbose: bool = False) -> None:
    """Install a RichHandler on the `rdbinit` logger (DEBUG when verbose)."""
    logger = logging.getLogger("rdbinit")
    logger.handlers.clear()
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False
