"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from changeflow.config import (
    ChangeflowConfig,
    EngineConfig,
    WorkerConfig,
    get_config_paths,
    load_config,
    parse_duration_seconds,
    save_config,
    validate_config_file,
)
from changeflow.core import ConfigurationError


def write_yaml(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def project(tmp_path, monkeypatch):
    """Run from an empty project directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestConfigModels:
    """Test model defaults and validation."""

    def test_defaults(self):
        config = ChangeflowConfig()

        assert config.engine.max_retries == 2
        assert config.engine.default_template == "full-stack"
        assert config.escalation.mode == "interactive"
        assert config.logging.level == "INFO"
        assert config.workers == {}

    @pytest.mark.parametrize("value,expected", [("30s", 30.0), ("10m", 600.0), ("2h", 7200.0)])
    def test_parse_duration(self, value, expected):
        assert parse_duration_seconds(value) == expected

    def test_invalid_duration(self):
        with pytest.raises(ValueError):
            parse_duration_seconds("ten minutes")
        with pytest.raises(ValueError):
            EngineConfig(worker_timeout="10")

    @pytest.mark.parametrize(
        "field,value", [("max_retries", -1), ("max_retries", 11), ("max_parallel_workers", 0)]
    )
    def test_engine_limits(self, field, value):
        with pytest.raises(ValueError):
            EngineConfig(**{field: value})

    def test_retry_config(self):
        retry = EngineConfig(max_retries=3, retry_delay="2s", max_retry_delay="1m").to_retry_config()

        assert retry.max_retries == 3
        assert retry.retry_delay == 2.0
        assert retry.max_retry_delay == 60.0

    def test_worker_timeouts(self):
        config = ChangeflowConfig(
            engine=EngineConfig(worker_timeout="5m"),
            workers={
                "backend": WorkerConfig(command="agent", timeout="30s"),
                "frontend": WorkerConfig(command="agent"),
            },
        )
        assert config.get_worker_timeouts() == {"backend": 30.0, "frontend": 300.0}

    def test_empty_worker_command(self):
        with pytest.raises(ValueError):
            WorkerConfig(command="  ")

    def test_invalid_escalation_mode(self):
        with pytest.raises(ValueError):
            ChangeflowConfig(escalation={"mode": "email"})


class TestLoadConfig:
    """Test layered configuration loading."""

    def test_no_files(self, project):
        assert load_config() == ChangeflowConfig()

    def test_layers_override_in_order(self, project, tmp_path):
        write_yaml(
            tmp_path / "xdg" / "changeflow" / "config.yaml",
            {"engine": {"max_retries": 5, "retry_delay": "1s"}, "logging": {"level": "DEBUG"}},
        )
        write_yaml(project / ".changeflow" / "config.yaml", {"engine": {"max_retries": 3}})
        explicit = write_yaml(tmp_path / "explicit.yaml", {"logging": {"level": "ERROR"}})

        config = load_config(config_path=explicit)

        assert config.engine.max_retries == 3
        assert config.engine.retry_delay == "1s"
        assert config.logging.level == "ERROR"

    def test_project_config_found_from_subdirectory(self, project, monkeypatch):
        write_yaml(project / ".changeflow" / "config.yaml", {"engine": {"max_retries": 4}})
        nested = project / "src" / "app"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        assert load_config().engine.max_retries == 4
        assert get_config_paths()["project"] == project / ".changeflow" / "config.yaml"

    def test_env_var_substitution(self, project, monkeypatch):
        monkeypatch.setenv("AGENT_CMD", "my-agent --fast")
        write_yaml(
            project / ".changeflow" / "config.yaml",
            {
                "workers": {
                    "backend": {"command": "${AGENT_CMD}"},
                    "frontend": {"command": "${MISSING_CMD:claude -p}"},
                }
            },
        )

        config = load_config()
        assert config.workers["backend"].command == "my-agent --fast"
        assert config.workers["frontend"].command == "claude -p"

    def test_missing_explicit_file(self, project):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(config_path=project / "nope.yaml")

    def test_invalid_yaml(self, project):
        bad = project / "bad.yaml"
        bad.write_text("engine: [unclosed")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(config_path=bad)

    def test_non_mapping(self, project):
        bad = write_yaml(project / "list.yaml", ["a", "b"])
        with pytest.raises(ConfigurationError, match="YAML object"):
            load_config(config_path=bad)

    def test_validation_error(self, project):
        bad = write_yaml(project / "bad.yaml", {"engine": {"max_retries": 50}})
        with pytest.raises(ConfigurationError, match="validation failed"):
            load_config(config_path=bad)


class TestSaveAndValidate:
    """Test saving and standalone validation."""

    def test_save_round_trip(self, project):
        config = ChangeflowConfig(workers={"backend": WorkerConfig(command="agent")})
        path = project / "out" / "config.yaml"

        save_config(config, path)

        assert load_config(config_path=path).workers["backend"].command == "agent"

    def test_validate_config_file(self, project):
        good = write_yaml(project / "good.yaml", {"engine": {"max_retries": 1}})
        assert validate_config_file(good)["valid"]

        bad = write_yaml(project / "bad.yaml", {"logging": {"level": "LOUD"}})
        result = validate_config_file(bad)
        assert not result["valid"]
        assert result["errors"][0].startswith("logging.level:")
