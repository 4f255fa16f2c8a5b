"""Main module for cmdpipe."""

import logging
import sys
from pathlib import Path

from cmdpipe.builtins.commands import TRACE
from cmdpipe.cli.app import run
from cmdpipe.config.settings import get_settings

STAGE_LOGGER = "cmdpipe.stage"


def setup_logging(level: str | None = None, log_file: Path | None = None) -> None:
    """Configure logging to stderr, or to a file when one is configured.

    Stage stderr lines are logged at INFO; they stay visible even when the
    root level is higher so the CLI never hides a child's error output.
    """
    settings = get_settings()
    logging.addLevelName(TRACE, "TRACE")
    level_name = (level or settings.log_level).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.WARNING

    target = log_file or settings.log_file
    handlers: list[logging.Handler]
    if target is not None:
        target.parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(target, mode="a")]
    else:
        handlers = [logging.StreamHandler(sys.stderr)]

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    if numeric_level > logging.INFO:
        logging.getLogger(STAGE_LOGGER).setLevel(logging.INFO)
    logging.debug("cmdpipe starting, log level %s", level_name)


def main() -> None:
    """Entry point for the cmdpipe command."""
    sys.exit(run(configure_logging=setup_logging))


if __name__ == "__main__":
    main()
