"""
Utility functions for sysupdate downloads
Logging setup, keyset loading, output directory handling and the default
on-disk persistence handlers.
"""

import logging
import os
import re
import shutil
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Optional, Tuple

from sysupdate_dl import constants
from sysupdate_dl.errors import ConfigurationError, DownloadAborted
from sysupdate_dl.models import VersionCode

_KEY_LINE = re.compile(r"^\s*([A-Za-z0-9_]+)\s*=\s*([0-9A-Fa-f]+)\s*$")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration.

    Args:
        verbose: Log DEBUG to the console instead of INFO
        log_file: Also write a DEBUG log to this file

    Returns:
        The package logger

    Raises:
        ConfigurationError: If the log file cannot be opened
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger = logging.getLogger("sysupdate_dl")
    if log_file:
        try:
            handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot open log file {log_file}: {e}") from e
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        # Keep the console at the requested level
        for root_handler in logging.getLogger().handlers:
            root_handler.setLevel(level)
    return logger


def load_keyset(path: str) -> Dict[str, bytes]:
    """
    Load a keyset file ("name = hexvalue" per line).

    The keys are not interpreted here; they are handed to the container decoder.

    Args:
        path: Path to the keyset file (e.g. ~/.switch/prod.keys)

    Returns:
        Dictionary of key name to key bytes

    Raises:
        ConfigurationError: If the file is missing or a line is malformed
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigurationError(f"Cannot read keyset {path}: {e}") from e

    keys: Dict[str, bytes] = {}
    for lineno, line in enumerate(lines, 1):
        stripped = line.strip()
        if not stripped or stripped[0] in "#;":
            continue
        match = _KEY_LINE.match(stripped)
        if not match or len(match.group(2)) % 2:
            raise ConfigurationError(f"Malformed keyset line {lineno} in {path}: {stripped!r}")
        keys[match.group(1).lower()] = bytes.fromhex(match.group(2))

    if not keys:
        raise ConfigurationError(f"Keyset {path} contains no keys")
    return keys


def ensure_directory(path: str) -> None:
    """
    Ensure directory exists, creating it if necessary.

    Args:
        path: Directory path to create
    """
    Path(path).mkdir(parents=True, exist_ok=True)


def default_out_dir(version: VersionCode) -> str:
    """Default output directory name for a system update version."""
    return constants.DEFAULT_OUT_DIR_TEMPLATE.format(
        value=version.value, version=version, build=version.build_number
    )


def prepare_output_dir(path: str, ignore_warnings: bool = False,
                       confirm: Optional[Callable[[str], str]] = None) -> str:
    """
    Create the output directory, replacing an existing one.

    An existing directory is only removed after the user confirms, unless
    ignore_warnings is set.

    Args:
        path: Output directory
        ignore_warnings: Delete an existing directory without asking
        confirm: Prompt function returning the user's answer (defaults to input)

    Returns:
        The output directory path

    Raises:
        DownloadAborted: If the user does not confirm the overwrite
    """
    if os.path.exists(path):
        if not ignore_warnings:
            prompt = confirm or input
            answer = prompt(f"[WARNING] '{path}' already exists.\n"
                            f"Please confirm that it should be overwritten "
                            f"[type 'y' to accept, anything else to abort]: ")
            if answer.strip().lower() != "y":
                raise DownloadAborted(f"Not overwriting {path}", exit_code=constants.EXIT_ABORTED)
        shutil.rmtree(path)

    ensure_directory(path)
    return path


def nca_path(out_dir: str, content_id: str, is_meta: bool) -> str:
    """Path of a downloaded NCA: {out}/{id}.nca or {out}/{id}.cnmt.nca."""
    suffix = constants.META_SUFFIX if is_meta else constants.CONTENT_SUFFIX
    return os.path.join(out_dir, f"{content_id}{suffix}")


def format_size(size_bytes: Optional[int]) -> str:
    """
    Format bytes as human-readable string.

    Args:
        size_bytes: Size in bytes (None if unknown)

    Returns:
        Formatted string (e.g., "1.5 MB")
    """
    if size_bytes is None:
        return "?"
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{round(size, 2)} {unit}"
        size /= 1024
    return f"{round(size, 2)} TB"


def store_to_file(data: bytes, path: str, url: Optional[str] = None,
                  logger: Optional[logging.Logger] = None) -> None:
    """Write an in-memory blob to disk."""
    logger = logger or logging.getLogger("sysupdate_dl.utils")
    logger.debug(f"[StoreToFile] [{format_size(len(data))}] {url or ''} => {path}")
    with open(path, "wb") as f:
        f.write(data)


def stream_to_file(stream: BinaryIO, path: str, url: Optional[str] = None,
                   size: Optional[int] = None,
                   logger: Optional[logging.Logger] = None) -> int:
    """
    Copy a stream to disk without buffering it whole.

    Returns:
        Number of bytes written
    """
    logger = logger or logging.getLogger("sysupdate_dl.utils")
    logger.debug(f"[StreamToDisk] [{format_size(size)}] {url or ''} => {path}")
    written = 0
    with open(path, "wb") as f:
        while True:
            chunk = stream.read(constants.STREAM_COPY_SIZE)
            if not chunk:
                break
            f.write(chunk)
            written += len(chunk)
    return written


def make_file_handlers(out_dir: str, logger: Optional[logging.Logger] = None) -> Tuple[Callable, Callable]:
    """
    Create meta/content handlers that write NCAs into out_dir.

    File names come from unique content IDs, so concurrent handlers never
    write the same path.

    Returns:
        Tuple of (meta_handler, content_handler)
    """
    def meta_handler(data: bytes, title_id: str, content_id: str, version: str,
                     url: Optional[str] = None) -> None:
        store_to_file(data, nca_path(out_dir, content_id, True), url, logger)

    def content_handler(stream: BinaryIO, content_id: str, url: Optional[str] = None) -> None:
        stream_to_file(stream, nca_path(out_dir, content_id, False), url, logger=logger)

    return meta_handler, content_handler
