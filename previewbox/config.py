"""
Configuration module for loading and validating environment variables.
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Sandbox orchestration settings loaded from environment variables."""

    def __init__(self, load_env_file: bool = True, **overrides):
        if load_env_file:
            # Load .env file from project root
            env_path = Path(__file__).parent.parent / ".env"
            load_dotenv(dotenv_path=env_path)

        # Docker runtime
        self.docker_socket_path = os.getenv("PREVIEWBOX_DOCKER_SOCKET_PATH", "/var/run/docker.sock")
        self.image = os.getenv("PREVIEWBOX_IMAGE", "node:20")
        self.container_port = _env_int("PREVIEWBOX_CONTAINER_PORT", 4200)
        self.container_workdir = os.getenv("PREVIEWBOX_CONTAINER_WORKDIR", "/app")
        self.memory_limit = os.getenv("PREVIEWBOX_MEMORY_LIMIT", "1g")
        self.cpu_quota = _env_int("PREVIEWBOX_CPU_QUOTA", 100000)
        self.run_as_host_user = _env_bool("PREVIEWBOX_RUN_AS_HOST_USER", True)
        self.install_cleanup_tools = _env_bool("PREVIEWBOX_INSTALL_CLEANUP_TOOLS", True)

        # Storage
        self.storage_root = Path(os.getenv("PREVIEWBOX_STORAGE_ROOT", "storage")).resolve()
        self.native_projects_dir = Path(
            os.getenv("PREVIEWBOX_NATIVE_PROJECTS_DIR", str(Path.home() / "previewbox-projects"))
        ).expanduser()

        # Host ports handed out to preview sandboxes
        self.port_range_start = _env_int("PREVIEWBOX_PORT_RANGE_START", 8100)
        self.port_range_end = _env_int("PREVIEWBOX_PORT_RANGE_END", 8200)

        # Execution and lifecycle
        self.exec_timeout = _env_int("PREVIEWBOX_EXEC_TIMEOUT", 120)
        self.max_sandboxes = _env_int("PREVIEWBOX_MAX_SANDBOXES", 20)
        self.idle_pause_minutes = _env_int("PREVIEWBOX_IDLE_PAUSE_MINUTES", 15)
        self.hibernate_minutes = _env_int("PREVIEWBOX_HIBERNATE_MINUTES", 120)

        # Logging
        self.log_level = os.getenv("PREVIEWBOX_LOG_LEVEL", "INFO")
        self.log_json = _env_bool("PREVIEWBOX_LOG_JSON", False)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

        # Validate settings
        self._validate()

    @property
    def projects_root(self) -> Path:
        """Host directory holding one storage directory per project."""
        return self.storage_root / "projects"

    def _validate(self):
        """Validate that settings are usable together."""
        problems = []

        if self.port_range_start <= 0 or self.port_range_end > 65536:
            problems.append("port range must lie within 1-65535")
        if self.port_range_end - self.port_range_start < 2:
            problems.append("port range must contain at least two ports")
        if self.exec_timeout <= 0:
            problems.append("PREVIEWBOX_EXEC_TIMEOUT must be positive")
        if self.max_sandboxes <= 0:
            problems.append("PREVIEWBOX_MAX_SANDBOXES must be positive")
        if self.hibernate_minutes <= self.idle_pause_minutes:
            problems.append("PREVIEWBOX_HIBERNATE_MINUTES must exceed PREVIEWBOX_IDLE_PAUSE_MINUTES")

        if problems:
            raise ConfigError(
                f"Invalid configuration: {'; '.join(problems)}\n"
                "Check your environment or .env file."
            )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
