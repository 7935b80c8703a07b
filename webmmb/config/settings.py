"""Service settings with Pydantic Settings validation.

Environment variables (prefixed ``WEBMMB_``) and ``.env`` take precedence.
Non-sensitive configuration is loaded from ``config/main.yaml`` and the other
``config/*.yaml`` files, merged and validated against JSON schemas.
"""

import json
import os
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from webmmb.config.logging_config import get_logger

CONFIG_DIR_ENV: Final[str] = "WEBMMB_CONFIG_DIR"
DEFAULT_CONFIG_DIR: Final[str] = "config"

DEFAULT_EXECUTABLE_ARGS: Final[tuple[str, ...]] = (
    "-c",
    "{commands}",
    "-progress",
    "{progress}",
    "-output",
    "{output}",
)
SWEEP_INTERVAL_SECONDS_DEFAULT: Final[float] = 2.0
BACKEND_CALL_TIMEOUT_SECONDS_DEFAULT: Final[float] = 5.0
VANISHED_GRACE_SECONDS_DEFAULT: Final[float] = 300.0
RETENTION_SECONDS_DEFAULT: Final[float] = 7 * 24 * 3600.0
FETCHED_RETENTION_SECONDS_DEFAULT: Final[float] = 3600.0
SESSION_TTL_SECONDS_DEFAULT: Final[float] = 24 * 3600.0
TERMINATE_TIMEOUT_SECONDS_DEFAULT: Final[float] = 10.0

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge into base (takes precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def resolve_config_dir() -> Path:
    """Return the directory holding YAML configuration files."""
    return Path(os.environ.get(CONFIG_DIR_ENV, DEFAULT_CONFIG_DIR))


def load_schema(schema_name: str, config_dir: Path | None = None) -> dict[str, Any]:
    """Load JSON Schema from ``<config_dir>/schemas/``.

    Args:
        schema_name: Schema name without extension (e.g., "main")
        config_dir: Configuration directory (defaults to the resolved one)

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    base_dir = config_dir or resolve_config_dir()
    schema_path = base_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path | None = None,
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path | None = None) -> dict[str, Any]:
    """Load and merge all YAML configs from the configuration directory.

    ``main.yaml`` is loaded first, then every other ``*.yaml`` file in sorted
    order; later files override earlier ones. Each file is validated against
    the schema named after its stem, when one exists.

    Returns:
        Merged configuration dictionary
    """
    base_dir = config_dir or resolve_config_dir()
    merged_config: dict[str, Any] = {}
    if not base_dir.is_dir():
        return merged_config

    yaml_files = sorted(base_dir.glob("*.yaml"), key=lambda p: (p.name != "main.yaml", p.name))
    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(yaml_file),
                error=str(e),
            )
            continue

        try:
            validate_config_section(file_config, schema_name, str(yaml_file), base_dir)
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


class Settings(BaseSettings):
    """Service settings.

    Resolved once at startup and treated as read-only afterwards.
    """

    model_config = SettingsConfigDict(
        env_prefix="WEBMMB_",
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True,
    )

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            # validate_assignment runs field constraints on YAML values too
            setattr(self, field_name, value)

        executable_config = config.get("executable") or {}
        _assign("executable_path", executable_config.get("path"))
        _assign("executable_args", executable_config.get("args"))
        _assign("parameters_template_path", executable_config.get("parameters_template"))

        jobs_config = config.get("jobs") or {}
        _assign("jobs_root", jobs_config.get("root"))
        _assign("max_active_jobs", jobs_config.get("max_active"))
        if "backend" in jobs_config:
            _assign("backend", jobs_config.get("backend"))
        elif jobs_config.get("use_pbs_offloading") is not None:
            _assign("backend", "pbs" if jobs_config["use_pbs_offloading"] else "local")

        reconciliation_config = config.get("reconciliation") or {}
        _assign(
            "sweep_interval_seconds",
            reconciliation_config.get("sweep_interval_seconds"),
        )
        _assign(
            "backend_call_timeout_seconds",
            reconciliation_config.get("backend_call_timeout_seconds"),
        )
        _assign("backend_workers", reconciliation_config.get("backend_workers"))
        _assign(
            "vanished_grace_seconds",
            reconciliation_config.get("vanished_grace_seconds"),
        )

        retention_config = config.get("retention") or {}
        _assign("retention_seconds", retention_config.get("seconds"))
        _assign("fetched_retention_seconds", retention_config.get("fetched_seconds"))

        sessions_config = config.get("sessions") or {}
        _assign("session_ttl_seconds", sessions_config.get("ttl_seconds"))

        local_config = config.get("local") or {}
        _assign(
            "terminate_timeout_seconds",
            local_config.get("terminate_timeout_seconds"),
        )

        pbs_config = config.get("pbs") or {}
        _assign("pbs_qsub_command", pbs_config.get("qsub"))
        _assign("pbs_qstat_command", pbs_config.get("qstat"))
        _assign("pbs_qdel_command", pbs_config.get("qdel"))

        persistence_config = config.get("persistence") or {}
        _assign("persistence_path", persistence_config.get("path"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))
        _assign("json_logs", logging_config.get("json"))

        api_config = config.get("api") or {}
        _assign("api_host", api_config.get("host"))
        _assign("api_port", api_config.get("port"))

        metrics_config = config.get("metrics") or {}
        _assign("metrics_port", metrics_config.get("port"))

    # Simulation program
    executable_path: str = Field(
        default="/opt/mmb/MMB", description="Path to the simulation executable"
    )
    executable_args: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXECUTABLE_ARGS),
        description="Argument templates ({commands}, {progress}, {output})",
    )
    parameters_template_path: str | None = Field(
        default=None,
        description="Parameter template copied into each workspace (optional)",
    )

    # Jobs
    jobs_root: str = Field(default="data/jobs", description="Root of job workspaces")
    backend: Literal["local", "pbs"] = Field(
        default="local", description="Execution backend: local or pbs"
    )
    max_active_jobs: int = Field(
        default=4, ge=1, description="Maximum jobs in Starting/Running at once"
    )

    # Reconciliation
    sweep_interval_seconds: float = Field(
        default=SWEEP_INTERVAL_SECONDS_DEFAULT,
        gt=0,
        description="Interval between reconciliation sweeps",
    )
    backend_call_timeout_seconds: float = Field(
        default=BACKEND_CALL_TIMEOUT_SECONDS_DEFAULT,
        gt=0,
        description="Budget for a single backend start/poll/cancel call",
    )
    backend_workers: int = Field(
        default=8, ge=1, description="Threads available for backend calls"
    )
    vanished_grace_seconds: float = Field(
        default=VANISHED_GRACE_SECONDS_DEFAULT,
        ge=0,
        description="How long a vanished job may stay unreported before failing",
    )

    # Retention
    retention_seconds: float = Field(
        default=RETENTION_SECONDS_DEFAULT,
        ge=0,
        description="How long terminal jobs are kept",
    )
    fetched_retention_seconds: float = Field(
        default=FETCHED_RETENTION_SECONDS_DEFAULT,
        ge=0,
        description="How long terminal jobs are kept once results were fetched",
    )

    # Sessions
    session_ttl_seconds: float = Field(
        default=SESSION_TTL_SECONDS_DEFAULT,
        gt=0,
        description="Sliding session lifetime",
    )

    # Local backend
    terminate_timeout_seconds: float = Field(
        default=TERMINATE_TIMEOUT_SECONDS_DEFAULT,
        ge=0,
        description="Delay between SIGTERM and SIGKILL when cancelling",
    )

    # PBS backend
    pbs_qsub_command: str = Field(default="qsub", description="PBS submit command")
    pbs_qstat_command: str = Field(default="qstat", description="PBS status command")
    pbs_qdel_command: str = Field(default="qdel", description="PBS cancel command")

    # Persistence
    persistence_path: str | None = Field(
        default=None,
        description="SQLite file for job records (None = in-memory only)",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Emit JSON logs")
    metrics_port: int | None = Field(
        default=None, description="Prometheus exporter port (None = disabled)"
    )

    # HTTP
    api_host: str = Field(default="127.0.0.1", description="HTTP bind address")
    api_port: int = Field(default=8000, description="HTTP port")

    @field_validator("executable_args")
    @classmethod
    def _validate_args(cls, value: list[str]) -> list[str]:
        if "{commands}" not in " ".join(value):
            raise ValueError("executable_args must reference {commands}")
        return value

    def validate_paths(self) -> None:
        """Check configured paths before the service starts.

        Raises:
            ValueError: If the executable or template is missing
        """
        if not Path(self.executable_path).is_file():
            raise ValueError(
                f"Invalid configuration, {self.executable_path} does not exist or it is not a file"
            )
        if self.parameters_template_path and not Path(
            self.parameters_template_path
        ).is_file():
            raise ValueError(
                f"Invalid configuration, {self.parameters_template_path} does not exist or it is not a file"
            )
        Path(self.jobs_root).mkdir(parents=True, exist_ok=True)


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create global settings instance.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
