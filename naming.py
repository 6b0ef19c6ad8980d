"""Storage names for uploaded files.

Layout: ``YYYYMMDD/YYYYMMDD-HHMMSSmmm-<32 hex chars>.<ext>``
"""
import secrets
import time
from datetime import datetime
from pathlib import Path, PurePosixPath

from loguru import logger

DEFAULT_EXT  = ".bin"
RANDOM_BYTES = 16


def _random_hex(now: float) -> str:
    try:
        return secrets.token_bytes(RANDOM_BYTES).hex()
    except (NotImplementedError, OSError) as e:
        # Time-derived suffix: two uploads in the same nanosecond collide.
        logger.warning(f"Secure random source unavailable ({e}); using degraded time-based file name")
        return f"{time.time_ns() ^ int(now * 1000):032x}"[-RANDOM_BYTES * 2:]


def extension(original_name: str) -> str:
    ext = PurePosixPath(original_name.replace("\\", "/")).suffix.lower()
    return ext or DEFAULT_EXT


def date_dir(now: float = None) -> str:
    stamp = datetime.fromtimestamp(time.time() if now is None else now)
    return stamp.strftime("%Y%m%d")


def generate_name(original_name: str, now: float = None) -> str:
    now   = time.time() if now is None else now
    stamp = datetime.fromtimestamp(now)
    ms    = stamp.microsecond // 1000
    return f"{stamp:%Y%m%d-%H%M%S}{ms:03d}-{_random_hex(now)}{extension(original_name)}"


def generate_path(original_name: str, now: float = None) -> str:
    """Return a fresh relative path for ``original_name``.

    Pure apart from the clock and the random source: nothing is created on
    disk, the caller makes the date directory and writes the file.
    """
    now = time.time() if now is None else now
    return f"{date_dir(now)}/{generate_name(original_name, now)}"


def date_from_path(relative_path: str) -> str:
    return relative_path.replace("\\", "/").split("/", 1)[0]


def storage_path(root: Path, relative_path: str) -> Path:
    """Absolute location of ``relative_path`` under ``root``.

    Raises ValueError when the path would leave ``root``.
    """
    root = Path(root).resolve()
    full = (root / relative_path.replace("\\", "/")).resolve()
    full.relative_to(root)
    return full
