"""Logging and verbosity flags shared by the demultiplexing and trimming tools."""

from __future__ import annotations

import argparse
import sys

from loguru import logger

# Verbosity levels from quietest to loudest; SUCCESS (the final summary line
# of each tool) is what a run without -v/-q shows.
VERBOSITY_LEVELS: tuple[str, ...] = (
    "CRITICAL",
    "ERROR",
    "WARNING",
    "SUCCESS",
    "INFO",
    "DEBUG",
    "TRACE",
)
DEFAULT_LEVEL_INDEX: int = VERBOSITY_LEVELS.index("SUCCESS")


def level_for(verbose: int, quiet: int) -> str:
    """
    Loguru level for the counts of -v and -q given on the command line.

    -v shows totals (INFO), -vv progress and per-file messages (DEBUG),
    -vvv the decision taken for every read (TRACE). -q hides the summary,
    -qq warnings, -qqq everything but critical errors.
    """
    index = DEFAULT_LEVEL_INDEX + verbose - quiet
    return VERBOSITY_LEVELS[max(0, min(index, len(VERBOSITY_LEVELS) - 1))]


def configure_logging(verbose: int, quiet: int) -> None:
    """Send log records at or above the requested verbosity to stderr."""
    logger.remove()
    level_str = level_for(verbose, quiet)
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


def add_verbosity_arguments(p: argparse.ArgumentParser) -> None:
    """-v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)."""
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )
