"""Unit tests for PlannerSettings and load_settings."""

from pathlib import Path

import pytest

from taskseries.config import PlannerSettings, load_settings
from taskseries.exceptions import ConfigurationError

pytestmark = pytest.mark.unit


class TestPlannerSettings:
    def test_defaults(self) -> None:
        settings = PlannerSettings()

        assert settings.max_occurrences == 25
        assert settings.max_duration_minutes == 1440
        assert settings.conflict_retries == 1
        assert settings.default_timezone == "UTC"
        assert settings.log_level == "INFO"

    def test_env_prefix_when_set_then_applied(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TASKSERIES_MAX_OCCURRENCES", "50")
        monkeypatch.setenv("TASKSERIES_LOG_LEVEL", "debug")

        settings = PlannerSettings()

        assert settings.max_occurrences == 50
        assert settings.log_level == "DEBUG"

    def test_dotenv_when_in_working_directory_then_ignored(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / ".env").write_text("TASKSERIES_MAX_OCCURRENCES=99\nTASKSERIES_SERVER_PORT=1234\n")
        monkeypatch.chdir(tmp_path)

        settings = PlannerSettings()

        assert settings.max_occurrences == 25
        assert settings.server_port == 8080

    def test_database_path_when_tilde_then_expanded(self) -> None:
        settings = PlannerSettings(database_path="~/tasks.db")
        assert settings.database_path == Path.home() / "tasks.db"


class TestLoadSettings:
    """Precedence: overrides, environment, YAML, defaults."""

    def test_load_when_yaml_then_values_used(self, tmp_path: Path) -> None:
        config = tmp_path / "config.yaml"
        config.write_text("max_occurrences: 40\ndefault_timezone: Europe/Berlin\n")

        settings = load_settings(config)

        assert settings.max_occurrences == 40
        assert settings.default_timezone == "Europe/Berlin"

    def test_load_when_env_and_yaml_then_env_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = tmp_path / "config.yaml"
        config.write_text("max_occurrences: 40\n")
        monkeypatch.setenv("TASKSERIES_MAX_OCCURRENCES", "60")

        assert load_settings(config).max_occurrences == 60

    def test_load_when_override_then_wins_over_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = tmp_path / "config.yaml"
        config.write_text("server_port: 8000\n")
        monkeypatch.setenv("TASKSERIES_SERVER_PORT", "9000")

        assert load_settings(config, server_port=3000).server_port == 3000

    def test_load_when_yaml_empty_then_defaults(self, tmp_path: Path) -> None:
        config = tmp_path / "config.yaml"
        config.write_text("")
        assert load_settings(config).max_occurrences == 25

    @pytest.mark.parametrize(
        "content",
        ["- just\n- a list\n", "max_occurrences: [unclosed\n", "max_occurrences: 0\n", "log_level: loud\n"],
    )
    def test_load_when_invalid_then_configuration_error(self, tmp_path: Path, content: str) -> None:
        config = tmp_path / "config.yaml"
        config.write_text(content)

        with pytest.raises(ConfigurationError):
            load_settings(config)

    def test_load_when_file_missing_then_configuration_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.yaml")
