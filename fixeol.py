#!/usr/bin/env python3
"""
fixeol

Normalize line endings in a text file without touching anything else.

The file's encoding is detected from its byte-order mark (ANSI, UTF-8 with
BOM, UTF-16 big or little endian) and the body is rewritten at the byte
level, one code unit at a time, so every byte that is not part of a line
ending comes out exactly as it went in.
"""

import argparse
import array
import enum
import logging
import os
import shutil
import sys
from typing import List, NamedTuple, Optional, Tuple

from tqdm import tqdm

# Define version
__version__ = "1.0.0"

logger = logging.getLogger("fixeol")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

BYTE_CARRIAGE_RETURN = 0x0D
BYTE_LINE_FEED = 0x0A

# Exit code for errors that are not described by a Result
UNEXPECTED_ERROR_EXIT_CODE = 255


class Encoding(enum.Enum):
    """Text encodings recognized from the leading bytes of a file."""

    ANSI = "Ansi"
    UTF8 = "Utf8"
    UTF16_BE = "Utf16BigEndian"
    UTF16_LE = "Utf16LittleEndian"
    UNKNOWN_BOM = "UnknownTextFileBOM"

    @property
    def bom(self) -> bytes:
        return _BOMS.get(self, b"")

    @property
    def unit_width(self) -> int:
        """Size of one code unit in bytes."""
        return 2 if self in (Encoding.UTF16_BE, Encoding.UTF16_LE) else 1

    def encode_units(self, *units: int) -> bytes:
        """Encode code unit values using this encoding's width and byte order."""
        if self is Encoding.UTF16_BE:
            return b"".join(bytes((0, unit)) for unit in units)
        if self is Encoding.UTF16_LE:
            return b"".join(bytes((unit, 0)) for unit in units)
        return bytes(units)

    def __str__(self) -> str:
        return self.value


_BOMS = {
    Encoding.UTF8: b"\xef\xbb\xbf",
    Encoding.UTF16_BE: b"\xfe\xff",
    Encoding.UTF16_LE: b"\xff\xfe",
}

# Byte-order marks we refuse to interpret
_UNSUPPORTED_BOMS = (
    b"\x00\x00\xfe\xff",  # UTF-32 BE
    b"\xff\xfe\x00\x00",  # UTF-32 LE
)


class LineEndingMode(enum.Enum):
    LF = "lf"
    CRLF = "crlf"

    @property
    def units(self) -> Tuple[int, ...]:
        if self is LineEndingMode.CRLF:
            return (BYTE_CARRIAGE_RETURN, BYTE_LINE_FEED)
        return (BYTE_LINE_FEED,)


class Result(enum.IntEnum):
    """Outcome of one invocation. The value doubles as the process exit code."""

    NOTHING_TO_DO = 0
    FIXED = 1
    NEED_TO_BE_FIXED = 2
    CORRUPTED_UTF16_NOT_MULTIPLE_OF_TWO = 3
    FAILED_TO_LOAD_FILE = 4
    FAILED_TO_SAVE_FILE = 5
    UNKNOWN_TEXT_FILE_BOM = 6


class LineEndingError(Exception):
    """Base class for content that cannot be normalized."""

    result: Result


class UnknownBomError(LineEndingError):
    result = Result.UNKNOWN_TEXT_FILE_BOM


class CorruptedUtf16Error(LineEndingError):
    result = Result.CORRUPTED_UTF16_NOT_MULTIPLE_OF_TWO


class FixOutcome(NamedTuple):
    encoding: Encoding
    result: Result
    data: bytes


def detect_encoding(data: bytes) -> Encoding:
    """
    Classify data by its byte-order mark.

    UTF-32 marks are checked first since the UTF-32 LE mark starts with the
    UTF-16 LE one. Data without a known mark is treated as ANSI.
    """
    if data.startswith(_UNSUPPORTED_BOMS):
        return Encoding.UNKNOWN_BOM

    for encoding, bom in _BOMS.items():
        if data.startswith(bom):
            return encoding

    return Encoding.ANSI


def _code_units(body: bytes, encoding: Encoding) -> "array.array[int]":
    """Split the body into code unit values, honoring the byte order."""
    if encoding.unit_width == 1:
        return array.array("B", body)

    units = array.array("H", body)
    wanted = "big" if encoding is Encoding.UTF16_BE else "little"
    if sys.byteorder != wanted:
        units.byteswap()
    return units


def normalize_line_endings(
    data: bytes, encoding: Encoding, mode: LineEndingMode
) -> bytes:
    """
    Rewrite every CR, LF and CRLF in data as the line ending of mode.

    The BOM is copied verbatim and all other code units pass through
    unchanged. Raises UnknownBomError for an unsupported encoding and
    CorruptedUtf16Error when a UTF-16 body has an odd number of bytes.
    """
    if encoding is Encoding.UNKNOWN_BOM:
        raise UnknownBomError("Unknown text file BOM")

    bom: bytes = encoding.bom
    body = data[len(bom) :]
    width: int = encoding.unit_width

    if len(body) % width:
        raise CorruptedUtf16Error(
            f"UTF-16 body is {len(body)} bytes, not a multiple of two"
        )

    newline: bytes = encoding.encode_units(*mode.units)
    units = _code_units(body, encoding)
    count: int = len(units)

    output = bytearray(bom)
    run_start = 0  # first unit of the pending run of plain text
    i = 0
    while i < count:
        unit = units[i]
        if unit == BYTE_CARRIAGE_RETURN or unit == BYTE_LINE_FEED:
            output += body[run_start * width : i * width]
            if (
                unit == BYTE_CARRIAGE_RETURN
                and i + 1 < count
                and units[i + 1] == BYTE_LINE_FEED
            ):
                i += 1
            output += newline
            run_start = i + 1
        i += 1
    output += body[run_start * width :]

    return bytes(output)


def has_changed(original: bytes, rewritten: bytes) -> bool:
    """Return True if rewritten differs from original in any byte."""
    if len(original) != len(rewritten):
        return True
    return original != rewritten


def fix_bytes(data: bytes, mode: LineEndingMode) -> FixOutcome:
    """
    Run detection, normalization and change detection on in-memory data.

    A change is reported as NEED_TO_BE_FIXED; writing it is up to the caller.
    When the data cannot be normalized, no output is produced and data is empty.
    """
    encoding: Encoding = detect_encoding(data)
    try:
        new_data: bytes = normalize_line_endings(data, encoding, mode)
    except LineEndingError as e:
        logger.debug("Cannot normalize %s data: %s", encoding, e)
        return FixOutcome(encoding, e.result, b"")

    if not has_changed(data, new_data):
        return FixOutcome(encoding, Result.NOTHING_TO_DO, data)
    return FixOutcome(encoding, Result.NEED_TO_BE_FIXED, new_data)


def describe_result(encoding: Encoding, result: Result, file_path: str) -> str:
    if result is Result.FIXED:
        return f"[{encoding}] Fixed: {file_path}"
    if result is Result.NEED_TO_BE_FIXED:
        return f"[{encoding}] Needs to be fixed: {file_path}"
    if result is Result.NOTHING_TO_DO:
        return f"[{encoding}] Nothing to do: {file_path}"
    if result is Result.UNKNOWN_TEXT_FILE_BOM:
        return f"Unknown text file BOM: {file_path}"
    if result is Result.CORRUPTED_UTF16_NOT_MULTIPLE_OF_TWO:
        return (
            f"[{encoding}] Corrupted UTF-16 file, "
            f"byte count is not a multiple of two: {file_path}"
        )
    if result is Result.FAILED_TO_LOAD_FILE:
        return f"Failed to load: {file_path}"
    return f"Failed to save: {file_path}"


def load_file(file_path: str) -> Tuple[bytes, os.stat_result]:
    with open(file_path, "rb") as f:
        data: bytes = f.read()
    return data, os.stat(file_path)


def save_file(file_path: str, data: bytes) -> None:
    # Truncate and write the whole buffer in one go
    with open(file_path, "wb") as f:
        f.write(data)


def create_backup(file_path: str) -> None:
    backup_path = file_path + ".bak"
    try:
        shutil.copy2(file_path, backup_path)
    except OSError as e:
        logger.warning("Could not create backup of %s: %s", file_path, str(e))
        return
    logger.debug("Created backup: %s", backup_path)


def restore_modified_time(file_path: str, stat: os.stat_result) -> None:
    try:
        os.utime(file_path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
    except OSError as e:
        logger.warning(
            "Could not restore modification time of %s: %s", file_path, str(e)
        )


def fix_file(  # pylint: disable=too-many-return-statements
    file_path: str,
    mode: LineEndingMode,
    dry_run: bool = False,
    backup: bool = False,
    keep_modified: bool = False,
) -> Result:
    """Normalize the line endings of one file and report what happened."""
    try:
        data, stat = load_file(file_path)
    except OSError as e:
        logger.error("Failed to load: %s", file_path)
        logger.error("- %s", str(e))
        return Result.FAILED_TO_LOAD_FILE

    outcome: FixOutcome = fix_bytes(data, mode)
    message: str = describe_result(outcome.encoding, outcome.result, file_path)

    if outcome.result is Result.NOTHING_TO_DO:
        logger.debug("%s", message)
        return outcome.result

    if outcome.result is not Result.NEED_TO_BE_FIXED:
        logger.error("%s", message)
        return outcome.result

    if dry_run:
        logger.warning("%s", message)
        return Result.NEED_TO_BE_FIXED

    if backup:
        create_backup(file_path)

    try:
        save_file(file_path, outcome.data)
    except OSError as e:
        logger.error("Failed to save: %s", file_path)
        logger.error("- %s", str(e))
        return Result.FAILED_TO_SAVE_FILE

    if keep_modified:
        restore_modified_time(file_path, stat)

    logger.info("%s", describe_result(outcome.encoding, Result.FIXED, file_path))
    return Result.FIXED


def fix_files(
    files: List[str],
    mode: LineEndingMode,
    dry_run: bool = False,
    backup: bool = False,
    keep_modified: bool = False,
) -> Result:
    """Fix files one after another and return the most severe result."""
    worst: Result = Result.NOTHING_TO_DO
    counts = {result: 0 for result in Result}

    with tqdm(
        total=len(files),
        desc="Fixing line endings",
        unit="file",
        disable=len(files) < 2,
    ) as pbar:
        for file_path in files:
            result: Result = fix_file(
                file_path, mode, dry_run, backup, keep_modified
            )
            counts[result] += 1
            worst = max(worst, result)
            pbar.update(1)

    if len(files) > 1:
        logger.info(
            "Fixed: %d, Need fixing: %d, Unchanged: %d, Errors: %d",
            counts[Result.FIXED],
            counts[Result.NEED_TO_BE_FIXED],
            counts[Result.NOTHING_TO_DO],
            len(files)
            - counts[Result.FIXED]
            - counts[Result.NEED_TO_BE_FIXED]
            - counts[Result.NOTHING_TO_DO],
        )

    return worst


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    for old_handler in list(logger.handlers):
        logger.removeHandler(old_handler)
        old_handler.close()

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Normalize line endings in text files, keeping their "
        "encoding and byte-order mark"
    )
    parser.add_argument("paths", nargs="*", help="Files to fix")
    parser.add_argument(
        "--format",
        choices=[m.value for m in LineEndingMode],
        default=None,
        help="Target line ending format (default: lf)",
    )
    parser.add_argument(
        "--lf",
        dest="format",
        action="store_const",
        const=LineEndingMode.LF.value,
        help="Shorthand for --format lf",
    )
    parser.add_argument(
        "--crlf",
        dest="format",
        action="store_const",
        const=LineEndingMode.CRLF.value,
        help="Shorthand for --format crlf",
    )
    parser.add_argument(
        "--dry",
        action="store_true",
        help="Only report files that need fixing, do not write anything",
    )
    parser.add_argument(
        "--backup",
        action="store_true",
        help="Keep a copy of the original file with a .bak suffix",
    )
    parser.add_argument(
        "--keep-modified",
        action="store_true",
        help="Preserve the original modification time",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never prompt for missing options",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also append log messages to this file",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fixeol v{__version__}",
        help="Show program version and exit",
    )
    return parser


def prompt_for_options(args: argparse.Namespace) -> None:
    """Ask for the options that were not given on the command line."""
    file_path = input("Fix line endings in which file? ").strip()
    if file_path:
        args.paths = [file_path]

    if args.format is None:
        format_choice = (
            input("Convert to which line ending format? [lf/crlf, default: lf] ")
            .strip()
            .lower()
        )
        if format_choice in [m.value for m in LineEndingMode]:
            args.format = format_choice

    if not args.dry:
        dry = (
            input("Only report whether the file needs fixing (y/n)? [default: n] ")
            .strip()
            .lower()
        )
        args.dry = dry.startswith("y")


def main() -> int:
    try:
        args = build_parser().parse_args()
        configure_logging(args.verbose, args.log_file)

        if not args.paths and not args.non_interactive:
            prompt_for_options(args)

        if not args.paths:
            logger.error("Error: no file given.")
            return int(Result.FAILED_TO_LOAD_FILE)

        mode = LineEndingMode(args.format or LineEndingMode.LF.value)
        logger.debug("Target line ending format: %s", mode.value.upper())

        result: Result = fix_files(
            args.paths,
            mode,
            dry_run=args.dry,
            backup=args.backup,
            keep_modified=args.keep_modified,
        )
        return int(result)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        if logger.level <= logging.DEBUG:
            import traceback  # pylint: disable=import-outside-toplevel

            logger.debug("Traceback: %s", traceback.format_exc())
        return UNEXPECTED_ERROR_EXIT_CODE


if __name__ == "__main__":
    sys.exit(main())
