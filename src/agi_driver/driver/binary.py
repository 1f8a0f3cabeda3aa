"""Binary locator for the agi-driver executable.

agi-driver driver/binary v0.1.0

Search order:
1. AGI_DRIVER_PATH environment variable (explicit override)
2. Bundled in this package's bin/ directory
3. Global installation (in PATH)
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from pathlib import Path
from typing import Literal

from ..errors import BinaryNotFoundError

__all__ = [
    "PlatformId",
    "ENV_DRIVER_PATH",
    "get_platform_id",
    "get_binary_filename",
    "get_search_paths",
    "find_binary_path",
    "is_binary_available",
]

logger = logging.getLogger(__name__)

PlatformId = Literal["darwin-arm64", "darwin-x64", "linux-x64", "windows-x64"]

ENV_DRIVER_PATH = "AGI_DRIVER_PATH"

# 本包内置二进制目录
BUNDLED_BIN_DIR = Path(__file__).resolve().parent.parent / "bin"


def get_platform_id() -> PlatformId:
    """Get the current platform identifier.

    Raises:
        BinaryNotFoundError: On platforms without a driver build
    """
    system = platform.system().lower()
    machine = platform.machine().lower()

    if system == "darwin":
        return "darwin-arm64" if machine in ("arm64", "aarch64") else "darwin-x64"
    if system == "linux":
        return "linux-x64"
    if system == "windows":
        return "windows-x64"

    raise BinaryNotFoundError(f"Unsupported platform: {system}-{machine}")


def get_binary_filename(platform_id: PlatformId | None = None) -> str:
    """Get the binary filename for a platform (default: current)."""
    platform_id = platform_id or get_platform_id()
    if platform_id == "windows-x64":
        return "agi-driver.exe"
    return "agi-driver"


def get_search_paths(platform_id: PlatformId | None = None) -> list[Path]:
    """Candidate binary locations in priority order.

    PATH entries are not expanded here; find_binary_path() consults
    shutil.which() after these candidates.
    """
    platform_id = platform_id or get_platform_id()
    filename = get_binary_filename(platform_id)
    paths: list[Path] = []

    override = os.environ.get(ENV_DRIVER_PATH)
    if override:
        override_path = Path(override).expanduser()
        # 允许指向目录（开发时指向构建输出目录）
        paths.append(override_path / filename if override_path.is_dir() else override_path)

    paths.append(BUNDLED_BIN_DIR / platform_id / filename)
    paths.append(BUNDLED_BIN_DIR / filename)
    return paths


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_binary_path() -> Path:
    """Find the agi-driver binary.

    Returns:
        Absolute path to the binary

    Raises:
        BinaryNotFoundError: If the binary cannot be found
    """
    platform_id = get_platform_id()
    candidates = get_search_paths(platform_id)

    for path in candidates:
        if _is_executable(path):
            logger.debug(f"Found driver binary: {path}")
            return path.resolve()

    filename = get_binary_filename(platform_id)
    which = shutil.which(filename)
    if which:
        logger.debug(f"Found driver binary in PATH: {which}")
        return Path(which).resolve()

    searched = [str(p) for p in candidates] + [f"$PATH/{filename}"]
    raise BinaryNotFoundError(
        f"Could not find agi-driver binary for {platform_id}. "
        f"Searched: {', '.join(searched)}. "
        f"Set {ENV_DRIVER_PATH} or ensure {filename} is in PATH.",
        searched=searched,
    )


def is_binary_available() -> bool:
    """Check if the binary can be found."""
    try:
        find_binary_path()
    except BinaryNotFoundError:
        return False
    return True
