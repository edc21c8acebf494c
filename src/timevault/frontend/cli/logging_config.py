"""Logging setup for the command line front end."""

import logging
import sys


def configure_logging(level: int | str = logging.INFO) -> None:
    # stdout carries command output (JSON), so log lines go to stderr
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
