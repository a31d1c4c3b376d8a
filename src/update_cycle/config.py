"""
Configuration management for the update cycle orchestrator.

This module implements the AppConfig Pydantic model and configuration loading.
The configuration object is built once at startup and handed to every
component; no component reads the ambient environment on its own.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (./update_cycle.yml or --config path)
3. Environment variables (UPDATE_CYCLE_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

Install and data directories that are not configured explicitly are derived
from the host platform by derive_platform_paths().
"""

from __future__ import annotations

import argparse
import os
import shlex
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any, get_origin

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from update_cycle.errors import FailedPreconditionError, UnsupportedPlatformError

DEFAULT_CONFIG_PATH = Path("update_cycle.yml")
DEFAULT_ENV_PREFIX = "UPDATE_CYCLE_"

# =============================================================================
# Paths Configuration
# =============================================================================


class PathsConfig(BaseModel):
    """Filesystem locations used during a run.

    Attributes:
        project_dir: Root of the sample application; collaborators run here.
        scratch_dir: Build/repository scratch directory (temp_<app_name>).
        install_dir: Directory the client is installed into.
        data_dir: Per-user data directory of the client.
        settings_file: Source file holding the version marker line.
        spec_file: Build specification handed to the bundler.
    """

    project_dir: str = Field(
        default=".",
        description="Root directory of the sample application",
    )
    scratch_dir: str | None = Field(
        default=None,
        description="Scratch directory; defaults to <project_dir>/temp_<app_name>",
    )
    install_dir: str | None = Field(
        default=None,
        description="Install directory; derived from the platform when unset",
    )
    data_dir: str | None = Field(
        default=None,
        description="Per-user data directory; derived from the platform when unset",
    )
    settings_file: str = Field(
        default="src/myapp/settings.py",
        description="Application source file containing the version marker",
    )
    spec_file: str = Field(
        default="main.spec",
        description="Build specification for the bundler",
    )


# =============================================================================
# Release Configuration
# =============================================================================


class ReleaseConfig(BaseModel):
    """Versions built during the cycle.

    Attributes:
        base_version: Version installed first.
        new_version: Version the client updates to.
        version_variable: Name of the variable holding the version literal.
        archive_suffix: File suffix of the archives produced by the publisher.
    """

    base_version: str = Field(default="1.0", description="Initially installed version")
    new_version: str = Field(default="2.0", description="Version published as update")
    version_variable: str = Field(
        default="APP_VERSION",
        description="Variable in the settings file holding the version literal",
    )
    archive_suffix: str = Field(
        default=".tar.gz",
        description="Archive file suffix used by the publisher",
    )

    @field_validator("base_version", "new_version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> str:
        """Accept numeric versions coming from YAML or the environment."""
        return str(v)

    @model_validator(mode="after")
    def check_versions_differ(self) -> ReleaseConfig:
        """Reject a cycle that would not change the version."""
        if self.base_version == self.new_version:
            raise ValueError(
                f"new_version must differ from base_version ({self.base_version})"
            )
        return self


# =============================================================================
# Tools Configuration
# =============================================================================


class ToolsConfig(BaseModel):
    """Command templates for the external collaborators.

    Placeholders such as {python}, {version} or {repository_dir} are filled
    in by update_cycle.process.render_command.

    Attributes:
        bundler: Builds the application bundle.
        repo_init: Initializes the update repository.
        repo_publish: Adds the latest bundle to the repository.
        extractor: Extracts an archive into the install directory.
        file_server: Serves the repository directory over HTTP.
    """

    bundler: list[str] = Field(
        default_factory=lambda: [
            "pyinstaller",
            "{spec_file}",
            "--clean",
            "-y",
            "--distpath",
            "{scratch_dir}/dist",
            "--workpath",
            "{scratch_dir}/build/{version}",
        ],
        description="Bundler command template",
    )
    repo_init: list[str] = Field(
        default_factory=lambda: ["{python}", "repo_init.py"],
        description="Repository initializer command template",
    )
    repo_publish: list[str] = Field(
        default_factory=lambda: ["{python}", "repo_add_bundle.py"],
        description="Repository publisher command template",
    )
    extractor: list[str] = Field(
        default_factory=lambda: ["tar", "-xf", "{archive}", "--directory", "{install_dir}"],
        description="Archive extractor command template",
    )
    file_server: list[str] = Field(
        default_factory=lambda: [
            "{python}",
            "-m",
            "http.server",
            "{port}",
            "--bind",
            "{host}",
            "--directory",
            "{repository_dir}",
        ],
        description="HTTP file server command template",
    )

    @field_validator("bundler", "repo_init", "repo_publish", "extractor", "file_server")
    @classmethod
    def validate_not_empty(cls, v: list[str]) -> list[str]:
        """Require at least the program name."""
        if not v:
            raise ValueError("Command template must not be empty")
        return v


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Update server settings.

    Attributes:
        host: Address the file server binds to.
        port: Port the file server listens on.
        ready_timeout_seconds: Deadline for the readiness probe.
        probe_initial_delay_seconds: First backoff delay between probes.
        probe_max_delay_seconds: Upper bound of the backoff delay.
        startup_grace_seconds: How long the server process must stay alive
            after start before an HTTP answer is trusted to come from it.
        stop_timeout_seconds: Grace period before the server is killed.
    """

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, ge=1, le=65535, description="Listen port")
    ready_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Readiness probe deadline in seconds"
    )
    probe_initial_delay_seconds: float = Field(
        default=0.1, gt=0, description="Initial delay between readiness probes"
    )
    probe_max_delay_seconds: float = Field(
        default=1.0, gt=0, description="Maximum delay between readiness probes"
    )
    startup_grace_seconds: float = Field(
        default=1.0, ge=0, description="Minimum server uptime before it counts as ready"
    )
    stop_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Grace period before killing the server"
    )

    @property
    def url(self) -> str:
        """Base URL of the update server."""
        return f"http://{self.host}:{self.port}/"


# =============================================================================
# Client Configuration
# =============================================================================


class ClientConfig(BaseModel):
    """Installed client settings.

    Attributes:
        executable: Client executable name inside the install directory.
            Defaults to "main" ("main.exe" on Windows).
        timeout_seconds: Maximum run time of a single client invocation.
    """

    executable: str | None = Field(
        default=None,
        description="Client executable name relative to the install directory",
    )
    timeout_seconds: float = Field(
        default=600.0, gt=0, description="Timeout for each client invocation"
    )


# =============================================================================
# Timeouts Configuration
# =============================================================================


class TimeoutsConfig(BaseModel):
    """Timeouts for the foreground collaborators, in seconds."""

    build_seconds: float = Field(default=900.0, gt=0, description="Bundler timeout")
    repo_init_seconds: float = Field(default=120.0, gt=0, description="Initializer timeout")
    publish_seconds: float = Field(default=300.0, gt=0, description="Publisher timeout")
    extract_seconds: float = Field(default=120.0, gt=0, description="Extractor timeout")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON records instead of the console format.
    """

    level: str = Field(default="info", description="Log level")
    json_format: bool = Field(default=False, description="Emit JSON log records")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Interaction Configuration
# =============================================================================


class InteractionConfig(BaseModel):
    """Operator interaction settings.

    Attributes:
        assume_yes: Approve every confirmation and skip the operator pause.
    """

    assume_yes: bool = Field(
        default=False,
        description="Run non-interactively, approving all prompts",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        app_name: Name of the sample application; every working directory
            must end with it.
        enable_patch_update: Seed the targets cache so the publisher can
            produce a patch for the new version.
        paths: Filesystem locations.
        release: Versions built during the cycle.
        tools: External collaborator commands.
        server: Update server settings.
        client: Installed client settings.
        timeouts: Collaborator timeouts.
        logging: Logging configuration.
        interaction: Operator interaction settings.
    """

    app_name: str = Field(default="my_app", description="Application name")
    enable_patch_update: bool = Field(
        default=True, description="Enable differential (patch) updates"
    )
    paths: PathsConfig = Field(default_factory=PathsConfig, description="Paths")
    release: ReleaseConfig = Field(default_factory=ReleaseConfig, description="Release")
    tools: ToolsConfig = Field(default_factory=ToolsConfig, description="Collaborators")
    server: ServerConfig = Field(default_factory=ServerConfig, description="Update server")
    client: ClientConfig = Field(default_factory=ClientConfig, description="Client")
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig, description="Timeouts")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging")
    interaction: InteractionConfig = Field(
        default_factory=InteractionConfig, description="Operator interaction"
    )

    @field_validator("app_name")
    @classmethod
    def validate_app_name(cls, v: str) -> str:
        """The app name is used as a path segment and as a deletion guard."""
        v = v.strip()
        if not v:
            raise ValueError("app_name must not be empty")
        if "/" in v or "\\" in v:
            raise ValueError(f"app_name must not contain path separators: {v}")
        return v

    # -------------------------------------------------------------------------
    # Derived locations
    # -------------------------------------------------------------------------

    @property
    def project_dir(self) -> Path:
        """Root directory of the sample application."""
        return Path(self.paths.project_dir).expanduser()

    @property
    def scratch_dir(self) -> Path:
        """Scratch directory holding build output and the repository."""
        if self.paths.scratch_dir:
            return Path(self.paths.scratch_dir).expanduser()
        return self.project_dir / f"temp_{self.app_name}"

    @property
    def install_dir(self) -> Path:
        """Client install directory."""
        return self._required_path("install_dir", self.paths.install_dir)

    @property
    def data_dir(self) -> Path:
        """Client per-user data directory."""
        return self._required_path("data_dir", self.paths.data_dir)

    @property
    def targets_cache_dir(self) -> Path:
        """Client-side cache of previously installed archives."""
        return self.data_dir / "update_cache" / "targets"

    @property
    def repository_dir(self) -> Path:
        """Root of the published update repository."""
        return self.scratch_dir / "repository"

    @property
    def settings_file(self) -> Path:
        """Source file holding the version marker."""
        return self.project_dir / self.paths.settings_file

    @property
    def client_path(self) -> Path:
        """Full path of the installed client executable."""
        executable = self.client.executable
        if executable is None:
            executable = "main.exe" if sys.platform == "win32" else "main"
        return self.install_dir / executable

    @property
    def expected_marker(self) -> str:
        """Text the updated client must print."""
        return f"{self.app_name} {self.release.new_version}"

    def archive_path(self, version: str) -> Path:
        """Path of the published archive for a version."""
        return (
            self.repository_dir
            / "targets"
            / f"{self.app_name}-{version}{self.release.archive_suffix}"
        )

    def _required_path(self, name: str, value: str | None) -> Path:
        if not value:
            raise FailedPreconditionError(
                f"Path '{name}' is not configured",
                details={"path": name},
            )
        return Path(value).expanduser()


# =============================================================================
# Platform Defaults
# =============================================================================


def derive_platform_paths(
    app_name: str,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> dict[str, str]:
    """
    Derive the platform-specific install and data directories.

    Windows installs under %LOCALAPPDATA%\\Programs and keeps data under
    %LOCALAPPDATA%; macOS uses ~/Applications and ~/Library.

    Args:
        app_name: Application name, used as the final path segment.
        platform: Platform string (defaults to sys.platform).
        environ: Environment mapping (defaults to os.environ).
        home: Home directory (defaults to Path.home()).

    Returns:
        Dictionary with "install_dir" and "data_dir".

    Raises:
        UnsupportedPlatformError: If the platform is neither Windows nor macOS.
    """
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ

    if platform == "win32":
        local_app_data = environ.get("LOCALAPPDATA")
        if not local_app_data:
            raise UnsupportedPlatformError(
                "LOCALAPPDATA is not set",
                details={"platform": platform},
            )
        base = Path(local_app_data)
        return {
            "install_dir": str(base / "Programs" / app_name),
            "data_dir": str(base / app_name),
        }

    if platform == "darwin":
        home = home or Path.home()
        return {
            "install_dir": str(home / "Applications" / app_name),
            "data_dir": str(home / "Library" / app_name),
        }

    raise UnsupportedPlatformError(
        f"Unsupported platform: {platform}",
        details={"platform": platform, "supported": ["win32", "darwin"]},
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _env_field_annotation(parts: list[str]) -> Any:
    """Resolve the annotation of the AppConfig field a nested key points at."""
    model: type[BaseModel] | None = AppConfig
    annotation: Any = None
    for part in parts:
        field = model.model_fields.get(part) if model is not None else None
        if field is None:
            return None
        annotation = field.annotation
        is_model = isinstance(annotation, type) and issubclass(annotation, BaseModel)
        model = annotation if is_model else None
    return annotation


def _parse_env_value(value: str, annotation: Any = None) -> Any:
    """
    Convert an environment variable value for its target field.

    Command templates (list fields) are split like a shell command line.
    Everything else is passed through as a string and coerced by the
    model, so a version "1" or a path containing a comma stays intact.

    >>> _parse_env_value("python -m http.server {port}", list[str])
    ['python', '-m', 'http.server', '{port}']
    >>> _parse_env_value("1")
    '1'
    """
    if get_origin(annotation) is list:
        return shlex.split(value)
    return value


def _load_env_config(
    prefix: str = DEFAULT_ENV_PREFIX,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    UPDATE_CYCLE_SERVER__PORT=8080 sets server.port.
    """
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value, _env_field_annotation(parts))

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="update-cycle",
        description="Build, publish and verify a complete application update cycle",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log records")
    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Approve all prompts and skip the operator pause",
    )
    parser.add_argument(
        "--no-patch",
        action="store_true",
        help="Disable differential (patch) updates",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    logging_overrides: dict[str, Any] = {}
    if parsed.log_level:
        logging_overrides["level"] = parsed.log_level
    if parsed.debug:
        logging_overrides["level"] = "debug"
    if parsed.json_logs:
        logging_overrides["json_format"] = True
    if logging_overrides:
        result["logging"] = logging_overrides

    if parsed.yes:
        result["interaction"] = {"assume_yes": True}

    if parsed.no_patch:
        result["enable_patch_update"] = False

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Install and data directories missing after all layers are merged are
    derived from the platform; this is the only place the host platform
    is consulted.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or ./update_cycle.yml when present.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.
        platform: Platform override for path derivation.
        environ: Environment override for env layering and path derivation.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.
        UnsupportedPlatformError: If paths must be derived on an
            unsupported platform.
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)
        cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix, environ))
    config_dict = _deep_merge(config_dict, cli_config)

    config = AppConfig(**config_dict)

    if not (config.paths.install_dir and config.paths.data_dir):
        derived = derive_platform_paths(config.app_name, platform, environ)
        config = config.model_copy(
            update={
                "paths": config.paths.model_copy(
                    update={
                        "install_dir": config.paths.install_dir
                        or derived["install_dir"],
                        "data_dir": config.paths.data_dir or derived["data_dir"],
                    }
                )
            }
        )

    return config
