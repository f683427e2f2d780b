"""
Engine configuration.

Settings come from built-in defaults, an optional YAML file and BATCH_*
environment variables, in increasing order of precedence.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..services.fault_tolerance import RetryPolicy, SkipPolicy
from ..core.exceptions import ConfigurationError


ENV_PREFIX = "BATCH_"
CONFIG_FILE_ENV = "BATCH_CONFIG"


class EngineSettings(BaseModel):
    """Runtime settings for the engine, the HTTP trigger and the CLI."""

    # Execution metadata store
    store: str = "postgres"
    database_url: str = "postgresql://localhost:5432/batch"
    pool_size: int = Field(default=10, ge=1)
    max_overflow: int = Field(default=0, ge=0)
    apply_schema: bool = False

    # Chunk processing
    chunk_size: int = Field(default=1000, ge=1)
    concurrency_limit: int = Field(default=30, ge=1)
    queue_capacity: Optional[int] = Field(default=None, ge=1)
    parallel_steps: bool = False

    # Fault tolerance
    retry_attempts: int = Field(default=1, ge=1)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    skip_limit: int = Field(default=0, ge=0)

    # Application
    job_name: str = "importCustomers"
    input_files: Dict[str, str] = Field(default_factory=lambda: {
        "importCustomers": "customers.csv",
        "importStudents": "students.csv",
    })

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    # HTTP
    http_host: str = "0.0.0.0"
    http_port: int = Field(default=8080, ge=1, le=65535)

    @field_validator("store")
    @classmethod
    def _check_store(cls, value: str) -> str:
        value = value.lower()
        if value not in ("postgres", "memory"):
            raise ValueError("store must be 'postgres' or 'memory'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay
        )

    def skip_policy(self) -> SkipPolicy:
        return SkipPolicy(skip_limit=self.skip_limit)

    def input_file(self, job_name: str) -> str:
        try:
            return self.input_files[job_name]
        except KeyError:
            raise ConfigurationError(f"input_files.{job_name}", "no input file configured")


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in EngineSettings.model_fields:
        if name == "input_files":
            continue
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            overrides[name] = raw

    # BATCH_INPUT_FILE_<JOBNAME>=path
    file_prefix = ENV_PREFIX + "INPUT_FILE_"
    files = {key[len(file_prefix):]: value for key, value in environ.items() if key.startswith(file_prefix)}
    if files:
        overrides["input_files"] = files
    return overrides


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping; an empty file yields an empty dict."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(str(path), f"cannot read config file: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), f"invalid YAML: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def load_settings(config_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> EngineSettings:
    """
    Build settings from defaults, a YAML file and the environment.

    Args:
        config_file: YAML file path; falls back to $BATCH_CONFIG
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated EngineSettings

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    environ = os.environ if environ is None else environ
    config_file = config_file or environ.get(CONFIG_FILE_ENV)

    data: Dict[str, Any] = {}
    if config_file:
        data.update(load_yaml_file(Path(config_file)))

    overrides = _env_overrides(environ)
    if "input_files" in overrides:
        files = dict(data.get("input_files") or {})
        files.update(overrides.pop("input_files"))
        data["input_files"] = files
    data.update(overrides)

    try:
        return EngineSettings.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first["loc"]) or "settings"
        raise ConfigurationError(key, first["msg"])
