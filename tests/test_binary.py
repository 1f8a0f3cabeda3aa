"""Binary locator tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from agi_driver.driver import binary
from agi_driver.driver.binary import (
    ENV_DRIVER_PATH,
    find_binary_path,
    get_binary_filename,
    get_platform_id,
    get_search_paths,
    is_binary_available,
)
from agi_driver.errors import BinaryNotFoundError

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")


def make_executable(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def empty_bundle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the bundled bin/ directory at an empty temp dir and clear PATH."""
    bundle = tmp_path / "bin"
    monkeypatch.setattr(binary, "BUNDLED_BIN_DIR", bundle)
    monkeypatch.setenv("PATH", str(tmp_path / "empty-path"))
    return bundle


class TestPlatform:
    """Test platform detection."""

    def test_current_platform_supported(self):
        assert get_platform_id() in ("darwin-arm64", "darwin-x64", "linux-x64", "windows-x64")

    @pytest.mark.parametrize("system,machine,expected", [
        ("Darwin", "arm64", "darwin-arm64"),
        ("Darwin", "x86_64", "darwin-x64"),
        ("Linux", "x86_64", "linux-x64"),
        ("Windows", "AMD64", "windows-x64"),
    ])
    def test_mapping(self, monkeypatch, system, machine, expected):
        monkeypatch.setattr(binary.platform, "system", lambda: system)
        monkeypatch.setattr(binary.platform, "machine", lambda: machine)
        assert get_platform_id() == expected

    def test_unsupported(self, monkeypatch):
        monkeypatch.setattr(binary.platform, "system", lambda: "SunOS")
        monkeypatch.setattr(binary.platform, "machine", lambda: "sparc")
        with pytest.raises(BinaryNotFoundError, match="Unsupported platform"):
            get_platform_id()

    def test_filename(self):
        assert get_binary_filename("windows-x64") == "agi-driver.exe"
        assert get_binary_filename("linux-x64") == "agi-driver"


class TestSearch:
    """Test search order."""

    def test_env_override_first(self, monkeypatch, tmp_path):
        monkeypatch.setenv(ENV_DRIVER_PATH, str(tmp_path / "custom-driver"))
        paths = get_search_paths("linux-x64")
        assert paths[0] == tmp_path / "custom-driver"
        assert paths[1].parts[-2:] == ("linux-x64", "agi-driver")

    def test_env_override_directory(self, monkeypatch, tmp_path):
        monkeypatch.setenv(ENV_DRIVER_PATH, str(tmp_path))
        assert get_search_paths("linux-x64")[0] == tmp_path / "agi-driver"

    @posix_only
    def test_finds_env_override(self, monkeypatch, tmp_path, empty_bundle):
        driver = make_executable(tmp_path / "my-driver")
        monkeypatch.setenv(ENV_DRIVER_PATH, str(driver))
        assert find_binary_path() == driver.resolve()

    @posix_only
    def test_finds_bundled(self, empty_bundle):
        driver = make_executable(empty_bundle / get_platform_id() / get_binary_filename())
        assert find_binary_path() == driver.resolve()

    @posix_only
    def test_finds_in_path(self, monkeypatch, tmp_path, empty_bundle):
        path_dir = tmp_path / "path-bin"
        driver = make_executable(path_dir / get_binary_filename())
        monkeypatch.setenv("PATH", str(path_dir))
        assert find_binary_path() == driver.resolve()

    def test_not_found(self, empty_bundle):
        with pytest.raises(BinaryNotFoundError) as exc_info:
            find_binary_path()
        assert ENV_DRIVER_PATH in str(exc_info.value)
        assert exc_info.value.searched
        assert is_binary_available() is False

    @posix_only
    def test_non_executable_skipped(self, monkeypatch, tmp_path, empty_bundle):
        driver = tmp_path / "driver"
        driver.write_text("not executable")
        driver.chmod(0o644)
        monkeypatch.setenv(ENV_DRIVER_PATH, str(driver))
        with pytest.raises(BinaryNotFoundError):
            find_binary_path()


class TestDriverConstruction:
    """AgentDriver resolves the binary when no path is given."""

    def test_missing_binary_raises(self, empty_bundle):
        from agi_driver import AgentDriver

        with pytest.raises(BinaryNotFoundError):
            AgentDriver()

    @posix_only
    def test_uses_locator(self, monkeypatch, tmp_path, empty_bundle):
        from agi_driver import AgentDriver

        driver_path = make_executable(tmp_path / "agi-driver")
        monkeypatch.setenv(ENV_DRIVER_PATH, str(driver_path))
        assert AgentDriver().binary_path == driver_path.resolve()
