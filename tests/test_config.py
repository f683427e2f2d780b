import pytest

from batch_job_engine.core.exceptions import ConfigurationError
from batch_job_engine.utils.config import EngineSettings, load_settings


def test_defaults_without_file_or_environment():
    settings = load_settings(environ={})

    assert settings.store == "postgres"
    assert settings.chunk_size == 1000
    assert settings.concurrency_limit == 30
    assert settings.job_name == "importCustomers"
    assert settings.input_file("importStudents") == "students.csv"
    assert settings.retry_policy().max_attempts == 1
    assert settings.skip_policy().skip_limit == 0


def test_yaml_file_then_environment_overrides(tmp_path):
    config = tmp_path / "engine.yaml"
    config.write_text(
        "store: memory\n"
        "chunk_size: 250\n"
        "log_level: debug\n"
        "input_files:\n"
        "  importCustomers: /data/customers.csv\n"
    )

    settings = load_settings(str(config), environ={
        "BATCH_CHUNK_SIZE": "500",
        "BATCH_INPUT_FILE_importStudents": "/data/students.csv",
    })

    assert settings.store == "memory"
    assert settings.chunk_size == 500
    assert settings.log_level == "DEBUG"
    assert settings.input_file("importCustomers") == "/data/customers.csv"
    assert settings.input_file("importStudents") == "/data/students.csv"


def test_config_file_from_environment(tmp_path):
    config = tmp_path / "engine.yaml"
    config.write_text("http_port: 9090\n")

    settings = load_settings(environ={"BATCH_CONFIG": str(config)})
    assert settings.http_port == 9090


@pytest.mark.parametrize("environ", [
    {"BATCH_CHUNK_SIZE": "0"},
    {"BATCH_STORE": "redis"},
    {"BATCH_LOG_FORMAT": "xml"},
    {"BATCH_HTTP_PORT": "not-a-port"},
])
def test_invalid_values_raise_configuration_error(environ):
    with pytest.raises(ConfigurationError):
        load_settings(environ=environ)


def test_invalid_yaml_raises_configuration_error(tmp_path):
    config = tmp_path / "broken.yaml"
    config.write_text("chunk_size: [1, 2\n")
    with pytest.raises(ConfigurationError):
        load_settings(str(config), environ={})


def test_top_level_must_be_mapping(tmp_path):
    config = tmp_path / "list.yaml"
    config.write_text("- 1\n- 2\n")
    with pytest.raises(ConfigurationError):
        load_settings(str(config), environ={})


def test_missing_input_file_for_unknown_job():
    with pytest.raises(ConfigurationError):
        EngineSettings().input_file("importCourses")
