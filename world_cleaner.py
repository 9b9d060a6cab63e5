#!/usr/bin/env python3
import argparse
import logging
import os
import sys

from tqdm.contrib.logging import logging_redirect_tqdm

from anvil import RegionFormatError
from cleaner import WorldCleanError, clean_world
from level_data import LevelDataError

__version__ = "0.3.0"

logger = logging.getLogger("worldclean")


def setup_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def build_parser():
    parser = argparse.ArgumentParser(
        prog="worldclean",
        description="Quickly and easily clean Minecraft Anvil worlds.",
    )
    parser.add_argument(
        "world",
        help="Path to Minecraft world folder (contains region/ and level.dat)",
    )
    parser.add_argument(
        "output",
        nargs="?",
        default=None,
        help="Path to output world folder (default: <world>-clean next to the world)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker count for region processing (defaults to CPU count).",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Hide the region progress bar.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not os.path.isdir(args.world):
        parser.error(f"The specified world is not a directory: {args.world}")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")

    setup_logging(args.verbose)
    logger.info("worldclean %s", __version__)

    with logging_redirect_tqdm():
        try:
            clean_world(
                args.world,
                args.output,
                workers=args.workers,
                show_progress=not args.no_progress,
            )
        except (WorldCleanError, LevelDataError, RegionFormatError, OSError) as exc:
            cause = exc.__cause__
            if cause is not None:
                logger.error("%s: %s", exc, cause)
            else:
                logger.error("%s", exc)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
