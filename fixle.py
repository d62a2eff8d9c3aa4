#!/usr/bin/env python3
"""
fixle

Fix end-of-line characters in text files, replacing every Unix (LF), Mac (CR)
and DOS (CRLF) line ending with a single chosen convention.
"""

import argparse
import enum
import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

# Define version
__version__ = "1.0.0"

# Exit statuses
EXIT_OK = 0
EXIT_OPEN_FAILURE = 1
EXIT_USAGE = 64  # EX_USAGE from sysexits.h
EXIT_INTERRUPTED = 130

# Binary heuristic: share of NUL or high-bit bytes in the file prefix
PREFIX_SIZE_TO_CHECK = 2048
MAX_PERCENT = 3.0

CHUNK_SIZE = 64 * 1024
CR = 0x0D
LF = 0x0A

CONSOLE_FORMAT = "%(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("fixle")


class LineEnding(enum.Enum):
    """Line terminator written in place of every recognized line ending."""

    UNIX = b"\n"
    MAC = b"\r"
    DOS = b"\r\n"


class _State(enum.Enum):
    SCANNING = enum.auto()
    SAW_CR = enum.auto()
    DONE = enum.auto()


@dataclass
class EolStats:
    """Count of each line-ending variant found in one file."""

    unix_count: int = 0
    mac_count: int = 0
    dos_count: int = 0

    @property
    def total(self) -> int:
        return self.unix_count + self.mac_count + self.dos_count

    def report(self, path: str) -> str:
        return (
            f"{path}: {self.unix_count} Unix LE, "
            f"{self.mac_count} Mac LE, {self.dos_count} DOS LE"
        )


@dataclass(frozen=True)
class Config:
    """Options for one run, fixed before the first file is opened."""

    line_ending: LineEnding = LineEnding.UNIX
    force: bool = False
    verbose: bool = False
    dry_run: bool = False
    atomic: bool = False


def configure_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """Attach console (and optionally file) handlers to the fixle logger."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG if debug else logging.WARNING)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)


def is_binary_stream(stream: BinaryIO) -> bool:
    """
    Check if a stream looks binary by sampling its first PREFIX_SIZE_TO_CHECK bytes.

    The stream is rewound before and after sampling. Empty streams are text.
    This is a heuristic: content past the sampled prefix is never inspected.
    """
    stream.seek(0)
    try:
        chunk: bytes = stream.read(PREFIX_SIZE_TO_CHECK)
    finally:
        stream.seek(0)

    if not chunk:
        return False

    non_ascii: int = sum(1 for byte in chunk if byte == 0 or byte > 0x7F)
    percent: float = 100.0 * non_ascii / len(chunk)
    return percent >= MAX_PERCENT


def fix_line_ends(
    source: BinaryIO,
    target: Optional[BinaryIO],
    line_ending: LineEnding = LineEnding.UNIX,
    chunk_size: int = CHUNK_SIZE,
) -> EolStats:
    """
    Copy source to target, replacing every line ending with line_ending.

    A CR followed by LF is one DOS ending, a CR followed by anything else (or
    by the end of input) is one Mac ending, and a lone LF is one Unix ending.
    All other bytes are copied unchanged. With target set to None nothing is
    written and only the statistics are gathered.

    Raises OSError if reading or writing fails.
    """
    stats = EolStats()
    terminator: bytes = line_ending.value
    state = _State.SCANNING

    while state is not _State.DONE:
        chunk: bytes = source.read(chunk_size)
        if not chunk:
            if state is _State.SAW_CR:
                # Trailing CR at end of input
                stats.mac_count += 1
                if target is not None:
                    target.write(terminator)
            state = _State.DONE
            continue

        out = bytearray()
        for byte in chunk:
            if state is _State.SAW_CR:
                state = _State.SCANNING
                if byte == LF:
                    stats.dos_count += 1
                    out += terminator
                    continue
                stats.mac_count += 1
                out += terminator
                # fall through: byte starts the next token

            if byte == CR:
                state = _State.SAW_CR
            elif byte == LF:
                stats.unix_count += 1
                out += terminator
            else:
                out.append(byte)

        if target is not None and out:
            target.write(out)

    return stats


def replace_contents(scratch: BinaryIO, path: str) -> None:
    """Copy the whole scratch file over the contents of path, in place."""
    scratch.seek(0)
    with open(path, "wb") as dest:
        shutil.copyfileobj(scratch, dest)


def atomic_replace(scratch: BinaryIO, path: str) -> None:
    """Write the scratch file next to path, then rename it over path.

    Symlinks are resolved first so the file they point to is the one replaced.
    """
    scratch.seek(0)
    target: str = os.path.realpath(path)
    directory: str = os.path.dirname(target)
    with tempfile.NamedTemporaryFile(
        prefix=".fixle-", dir=directory, delete=False
    ) as staged:
        staged_path: str = staged.name
        try:
            shutil.copyfileobj(scratch, staged)
            staged.flush()
            os.fsync(staged.fileno())
        except OSError:
            staged.close()
            os.unlink(staged_path)
            raise

    try:
        shutil.copymode(target, staged_path)
        os.replace(staged_path, target)
    except OSError:
        os.unlink(staged_path)
        raise


def commit(scratch: BinaryIO, path: str, atomic: bool = False) -> None:
    """Replace the contents of path with the normalized scratch file."""
    if atomic:
        atomic_replace(scratch, path)
    else:
        replace_contents(scratch, path)


class Outcome(enum.Enum):
    """How the run treated one path."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


FileResult = Tuple[Outcome, Optional[EolStats]]


def _print_stats(stats: EolStats, path: str) -> None:
    tqdm.write(stats.report(path))


def _fix_open_file(source: BinaryIO, path: str, config: Config) -> FileResult:
    """Classify, normalize and commit a file already opened for reading."""
    if not config.force and is_binary_stream(source):
        logger.warning("%s is a binary file", path)
        return Outcome.SKIPPED, None

    if config.dry_run:
        stats = fix_line_ends(source, None, config.line_ending)
        _print_stats(stats, path)
        return Outcome.PROCESSED, stats

    try:
        scratch = tempfile.TemporaryFile(prefix="tmp.fixle")
    except OSError as e:
        logger.error(
            "Cannot create temporary file for %s: %s", path, e.strerror or e
        )
        return Outcome.FAILED, None

    with scratch:
        stats = fix_line_ends(source, scratch, config.line_ending)
        if config.verbose:
            _print_stats(stats, path)

        # Release the input before its contents are replaced
        source.close()
        commit(scratch, path, config.atomic)

    logger.debug("Updated file: %s", path)
    return Outcome.PROCESSED, stats


def fix_file(path: str, config: Config) -> FileResult:
    """
    Normalize the line endings of one file and say how it went.

    Directories and binary files are SKIPPED; scratch, read, write and commit
    errors are logged and the file is FAILED.

    Raises OSError if the file cannot be opened for reading; the caller is
    expected to abort the whole run in that case.
    """
    if os.path.isdir(path):
        logger.warning("%s is a directory", path)
        return Outcome.SKIPPED, None

    source = open(path, "rb")  # pylint: disable=consider-using-with
    with source:
        try:
            return _fix_open_file(source, path, config)
        except OSError as e:
            logger.error("%s: %s", path, e.strerror or e)
            return Outcome.FAILED, None


def process_file(path: str, config: Config) -> Optional[EolStats]:
    """Like fix_file, returning only the statistics (None if not processed)."""
    return fix_file(path, config)[1]


def run(paths: Sequence[str], config: Config) -> int:
    """Process every path in order and return the process exit status."""
    counts: Dict[Outcome, int] = {outcome: 0 for outcome in Outcome}

    # The bar only shows for multi-file runs on a terminal
    with logging_redirect_tqdm(loggers=[logger]), tqdm(
        total=len(paths),
        desc="Fixing line endings",
        unit="file",
        leave=False,
        disable=None if len(paths) > 1 else True,
    ) as pbar:
        for path in paths:
            try:
                outcome, _ = fix_file(path, config)
            except OSError as e:
                logger.error("%s: %s", path, e.strerror or e)
                return EXIT_OPEN_FAILURE

            counts[outcome] += 1
            pbar.update(1)

    if counts[Outcome.FAILED] > 0:
        logger.warning(
            "Encountered errors while processing %d files", counts[Outcome.FAILED]
        )
    logger.info(
        "Processed: %d, Skipped: %d, Errors: %d",
        counts[Outcome.PROCESSED],
        counts[Outcome.SKIPPED],
        counts[Outcome.FAILED],
    )
    return EXIT_OK


class UsageArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with EX_USAGE on bad command lines."""

    def error(self, message: str):  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = UsageArgumentParser(
        prog="fixle",
        description="Fix end-of-line characters, replacing with UNIX "
        "end-of-line characters (^J) unless told otherwise",
    )
    style = parser.add_mutually_exclusive_group()
    style.add_argument(
        "-m",
        "--mac",
        dest="line_ending",
        action="store_const",
        const=LineEnding.MAC,
        help="use Mac-style end-of-line characters (^M)",
    )
    style.add_argument(
        "-d",
        "--dos",
        dest="line_ending",
        action="store_const",
        const=LineEnding.DOS,
        help="use DOS-style end-of-line characters (^M^J)",
    )
    parser.set_defaults(line_ending=LineEnding.UNIX)
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="operate on files that appear binary without warning",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="don't replace lines (implies verbose)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="show original end-of-line character count",
    )
    parser.add_argument(
        "--atomic",
        action="store_true",
        help="commit through a temporary file renamed over the original",
    )
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument(
        "--log-file", default=None, help="also append log records to this file"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fixle v{__version__}",
        help="show program version and exit",
    )
    parser.add_argument("files", nargs="+", metavar="file", help="files to fix")
    return parser


def build_config(args: argparse.Namespace) -> Config:
    return Config(
        line_ending=args.line_ending,
        force=args.force,
        verbose=args.verbose or args.dry_run,
        dry_run=args.dry_run,
        atomic=args.atomic,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.debug, args.log_file)
    config = build_config(args)
    logger.debug("Target line ending: %s", config.line_ending.name)

    try:
        return run(args.files, config)
    except KeyboardInterrupt:
        logger.warning("Operation cancelled by user.")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
