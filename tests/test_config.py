"""Tests for imageprep configuration."""

from datetime import datetime
from pathlib import Path

import pytest
import yaml

from imageprep.config import (
    ConfigError,
    OrchestratorConfig,
    get_imageprep_home,
    load_config,
    write_default_config,
)


class TestImagePrepHome:
    """Tests for get_imageprep_home()."""

    def test_env_override(self, isolated_home):
        assert get_imageprep_home() == isolated_home

    def test_linux_default(self, monkeypatch):
        monkeypatch.delenv("IMAGEPREP_HOME")
        monkeypatch.setattr("imageprep.config.sys.platform", "linux")
        assert get_imageprep_home() == Path("/var/lib/imageprep")

    def test_windows_default(self, monkeypatch):
        monkeypatch.delenv("IMAGEPREP_HOME")
        monkeypatch.setattr("imageprep.config.sys.platform", "win32")
        monkeypatch.setenv("ProgramData", "D:\\ProgramData")
        assert get_imageprep_home() == Path("D:\\ProgramData") / "imageprep"


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_default_config_uses_defaults(self, isolated_home):
        config = load_config()

        assert config.config_path is None
        assert config.get_state_path() == isolated_home / "state.json"
        assert config.get_max_cycles() == 5
        assert config.get_reboot_mechanism() == "auto"
        assert config.get_task_name() == "imageprep-resume"
        assert config.get_reboot_delay() == 10
        assert config.get_retry_delays() == (5.0, 30.0)
        assert config.get_log_format() == "structured"

    def test_log_path_interpolates_date(self, isolated_home):
        log_path = load_config().get_log_file_path()
        assert log_path.parent == isolated_home / "logs"
        assert log_path.name == f"orchestrate-{datetime.now().strftime('%Y-%m-%d')}.log"

    def test_default_config_file_is_read(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text(
            yaml.safe_dump({"behavior": {"max_cycles": 3}, "reboot": {"mechanism": "run_once"}})
        )

        config = load_config()

        assert config.get_max_cycles() == 3
        assert config.get_reboot_mechanism() == "run_once"

    def test_explicit_missing_config_is_error(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("logging: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    @pytest.mark.parametrize(
        "raw, message",
        [
            ({"reboot": {"mechanism": "kexec"}}, "reboot.mechanism"),
            ({"logging": {"format": "xml"}}, "logging.format"),
            ({"logging": {"level": "chatty"}}, "logging.level"),
            ({"behavior": {"max_cycles": 0}}, "max_cycles"),
            ({"behavior": {"max_cycles": "many"}}, "Invalid numeric"),
            ({"state": "not-a-mapping"}, "'state' must be a mapping"),
        ],
    )
    def test_validation(self, tmp_path, raw, message):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(raw))
        with pytest.raises(ConfigError, match=message):
            load_config(path)

    def test_home_placeholder(self, isolated_home):
        config = OrchestratorConfig({"state": {"path": "{home}/runs/base.json"}})
        assert config.get_state_path() == isolated_home / "runs" / "base.json"


class TestWriteDefaultConfig:
    """Tests for write_default_config()."""

    def test_writes_loadable_defaults(self, isolated_home):
        path = write_default_config()

        assert path == isolated_home / "config.yaml"
        config = load_config()
        assert config.config_path == path
        assert config.get_max_cycles() == 5

    def test_refuses_to_overwrite(self, isolated_home):
        write_default_config()
        with pytest.raises(ConfigError, match="already exists"):
            write_default_config()

    def test_force_overwrites(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text("existing: true")

        write_default_config(force=True)

        assert "existing" not in (isolated_home / "config.yaml").read_text()
