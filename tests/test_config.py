"""Config 模块测试。

测试 AGI_DRIVER_* 环境变量解析和配置管理。
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest import mock

import pytest

from agi_driver.config import Config, get_config, load_config, reload_config


class TestDefaults:
    """测试默认值。"""

    def test_defaults(self):
        config = load_config()
        assert config.driver_path is None
        assert config.model == "claude-sonnet"
        assert config.platform == "desktop"
        assert config.mode == ""
        assert config.stop_timeout == 1.0
        assert config.auto_approve is False
        assert config.log_debug is False
        assert config.log_file is None


class TestParsing:
    """测试各环境变量解析。"""

    def test_model_and_path(self):
        env = {"AGI_DRIVER_MODEL": "claude-opus", "AGI_DRIVER_PATH": "/opt/agi-driver"}
        with mock.patch.dict(os.environ, env, clear=False):
            config = load_config()
        assert config.model == "claude-opus"
        assert config.driver_path == "/opt/agi-driver"

    @pytest.mark.parametrize("value,expected", [
        ("android", "android"),
        ("ANDROID", "android"),
        ("desktop", "desktop"),
        ("ios", "desktop"),
    ])
    def test_platform(self, value: str, expected: str):
        with mock.patch.dict(os.environ, {"AGI_DRIVER_PLATFORM": value}, clear=False):
            assert load_config().platform == expected

    @pytest.mark.parametrize("value,expected", [
        ("local", "local"),
        ("Remote", "remote"),
        ("cloud", ""),
    ])
    def test_mode(self, value: str, expected: str):
        with mock.patch.dict(os.environ, {"AGI_DRIVER_MODE": value}, clear=False):
            assert load_config().mode == expected

    @pytest.mark.parametrize("value,expected", [
        ("2.5", 2.5),
        ("0.01", 0.1),
        ("100", 30.0),
        ("abc", 1.0),
    ])
    def test_stop_timeout_clamped(self, value: str, expected: float):
        with mock.patch.dict(os.environ, {"AGI_DRIVER_STOP_TIMEOUT": value}, clear=False):
            assert load_config().stop_timeout == expected

    @pytest.mark.parametrize("value", ["true", "True", "1", "yes", "on"])
    def test_auto_approve_truthy(self, value: str):
        with mock.patch.dict(os.environ, {"AGI_DRIVER_AUTO_APPROVE": value}, clear=False):
            assert load_config().auto_approve is True

    @pytest.mark.parametrize("value", ["false", "0", "no", ""])
    def test_auto_approve_falsy(self, value: str):
        with mock.patch.dict(os.environ, {"AGI_DRIVER_AUTO_APPROVE": value}, clear=False):
            assert load_config().auto_approve is False

    def test_log_debug_sets_log_file(self):
        with mock.patch.dict(os.environ, {"AGI_DRIVER_LOG_DEBUG": "1"}, clear=False):
            config = load_config()
        assert config.log_debug is True
        assert config.log_file is not None
        assert Path(config.log_file).parent.name == "agi-driver"


class TestGlobalConfig:
    """测试全局配置缓存。"""

    def test_get_config_cached(self):
        assert get_config() is get_config()

    def test_reload_config(self):
        first = get_config()
        with mock.patch.dict(os.environ, {"AGI_DRIVER_MODEL": "other"}, clear=False):
            reloaded = reload_config()
        assert reloaded is not first
        assert get_config().model == "other"

    def test_repr(self):
        text = repr(Config())
        assert "driver_path=auto" in text
        assert "mode=sdk" in text
