"""Click subcommands of the ``chorus`` CLI."""

from __future__ import annotations

import logging


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr; DEBUG and up with ``-v``, else WARNING."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
