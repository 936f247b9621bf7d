"""Client configuration loading with layered precedence.

Provides configuration for the OpenCode link client with support for:
1. JSON configuration files (project-level and user-level)
2. A ``.env`` file
3. Environment variable overrides
4. Built-in defaults

Configuration precedence (highest wins):
1. Environment variables (OPENCODE_*)
2. ``.env`` file values
3. Project config (<workspace>/.opencode-link/client.json)
4. User config (~/.opencode-link/client.json)
5. Built-in defaults

Usage:
    from opencode_link.client.config import ConfigManager, load_client_config

    # Read-only snapshot
    config = load_client_config(workspace_path=Path.cwd())

    # Read/write store used by the client
    manager = ConfigManager()
    manager.load()
    manager.set_last_session_id("ses_123")

Environment Variables:
    OPENCODE_SERVER_URL: Server base URL (default: http://localhost:4096)
    OPENCODE_WORKING_DIRECTORY: Working directory for the agent
    OPENCODE_LAST_SESSION_ID: Session to resume on start
    OPENCODE_AUTO_RECONNECT: Retry the health check on failure (default: true)
    OPENCODE_RECONNECT_INTERVAL_MS: Delay between health checks (default: 5000)
    OPENCODE_PAUSE_ENABLED: Enable the pause policy (default: true)
"""

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type, get_type_hints

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".opencode-link"
CONFIG_FILE_NAME = "client.json"


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    # Extract inner type from Optional[X]
    args = getattr(target_type, '__args__', ())
    if args and type(None) in args:
        inner_types = [a for a in args if a is not type(None)]
        if inner_types:
            target_type = inner_types[0]

    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class ClientConfig:
    """Settings read by the client core.

    Attributes:
        server_url: Base URL of the OpenCode server.
        working_directory: Directory the agent works in.
        last_session_id: Session to resume on startup, if any.
        auto_reconnect: Whether a failed health check is retried.
        reconnect_interval_ms: Delay between health check attempts.
        pause_enabled: Whether the pause policy is active.
    """
    server_url: str = "http://localhost:4096"
    working_directory: str = field(default_factory=lambda: str(Path.home()))
    last_session_id: Optional[str] = None
    auto_reconnect: bool = True
    reconnect_interval_ms: int = 5000
    pause_enabled: bool = True

    def __post_init__(self):
        """Validate configuration values."""
        if not self.server_url:
            raise ValueError("server_url must not be empty")
        if self.reconnect_interval_ms < 100:
            raise ValueError("reconnect_interval_ms must be at least 100")

    @property
    def reconnect_interval(self) -> float:
        """Reconnect interval in seconds."""
        return self.reconnect_interval_ms / 1000.0


# Maps config field names to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "server_url": "OPENCODE_SERVER_URL",
    "working_directory": "OPENCODE_WORKING_DIRECTORY",
    "last_session_id": "OPENCODE_LAST_SESSION_ID",
    "auto_reconnect": "OPENCODE_AUTO_RECONNECT",
    "reconnect_interval_ms": "OPENCODE_RECONNECT_INTERVAL_MS",
    "pause_enabled": "OPENCODE_PAUSE_ENABLED",
}


def get_user_config_path() -> Path:
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def _find_config_files(workspace_path: Optional[Path] = None) -> List[Path]:
    """Find configuration files in order of precedence (lowest first).

    Args:
        workspace_path: Path to project workspace. If None, only user config
            is searched.

    Returns:
        List of existing config file paths, ordered from lowest to highest
        precedence.
    """
    files = []

    user_config = get_user_config_path()
    if user_config.exists():
        files.append(user_config)

    if workspace_path:
        project_config = Path(workspace_path) / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if project_config.exists():
            files.append(project_config)

    return files


def _read_config_file(config_file: Path) -> Dict[str, Any]:
    """Read one JSON config file, returning {} if it is unusable."""
    try:
        with open(config_file, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {config_file}: {e}")
        return {}
    except PermissionError:
        logger.warning(f"Permission denied reading {config_file}")
        return {}
    except OSError as e:
        logger.warning(f"Failed to load {config_file}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Invalid config format in {config_file} (expected object)")
        return {}

    logger.debug(f"Loaded config from {config_file}")
    return data


def _apply_env_overrides(
    config_dict: Dict[str, Any],
    environ: Mapping[str, Optional[str]],
) -> Dict[str, Any]:
    """Apply environment-style overrides to a config dict.

    Args:
        config_dict: Configuration dictionary to start from.
        environ: Mapping of variable names to values (os.environ or the
            contents of a .env file).

    Returns:
        New dictionary with overrides applied.
    """
    result = config_dict.copy()
    hints = get_type_hints(ClientConfig)

    for name, env_var in ENV_VAR_MAPPING.items():
        env_value = environ.get(env_var)
        if env_value is None:
            continue
        try:
            result[name] = _parse_env_value(env_value, hints.get(name, str))
            logger.debug(f"Applied env override: {env_var}={env_value}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid value for {env_var}: {env_value} ({e})")

    return result


def _dict_to_config(data: Dict[str, Any]) -> ClientConfig:
    """Convert dict to ClientConfig, ignoring unknown keys.

    Falls back to defaults when the values do not validate.
    """
    valid_fields = {f.name for f in fields(ClientConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    # Hand-edited files may quote booleans and numbers
    hints = get_type_hints(ClientConfig)
    for name, value in list(filtered.items()):
        if not isinstance(value, str):
            continue
        try:
            filtered[name] = _parse_env_value(value, hints.get(name, str))
        except ValueError:
            logger.warning(f"Invalid value for {name}: {value!r} (ignored)")
            del filtered[name]

    unknown = {k for k in data.keys() if not k.startswith("_")} - valid_fields
    if unknown:
        logger.warning(f"Unknown config keys (ignored): {sorted(unknown)}")

    try:
        return ClientConfig(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid config values, using defaults: {e}")
        return ClientConfig()


def load_client_config(
    workspace_path: Optional[Path] = None,
    env_file: Optional[Path] = None,
) -> ClientConfig:
    """Load client configuration with layered precedence.

    Args:
        workspace_path: Path to project workspace for project-level config.
        env_file: Optional ``.env`` file whose OPENCODE_* values override
            the JSON files.

    Returns:
        Merged ClientConfig instance.
    """
    merged: Dict[str, Any] = {}

    for config_file in _find_config_files(workspace_path):
        merged.update(_read_config_file(config_file))

    if env_file and Path(env_file).exists():
        merged = _apply_env_overrides(merged, dotenv_values(env_file))

    merged = _apply_env_overrides(merged, os.environ)

    return _dict_to_config(merged)


class ConfigManager:
    """Read/write store for the client configuration.

    The client core reads fields from ``config`` and persists the last used
    session id through ``set_last_session_id``. Configuration commands in
    the host write the other fields. Every setter saves immediately.

    Writes are guarded by a lock because host command handlers may run on
    a different thread from the client's event loop.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        config: Optional[ClientConfig] = None,
    ):
        """Initialize the manager.

        Args:
            path: JSON file to load from and save to. Defaults to the user
                config file.
            config: Initial configuration. Defaults to built-in defaults.
        """
        self._path = Path(path) if path else get_user_config_path()
        self._config = config or ClientConfig()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config(self) -> ClientConfig:
        return self._config

    def load(self) -> ClientConfig:
        """Load configuration from the file, creating it if missing."""
        if not self._path.exists():
            self.save()
            return self._config

        data = _read_config_file(self._path)
        with self._lock:
            self._config = _dict_to_config(data)
        logger.info(f"Loaded config from {self._path}")
        return self._config

    def save(self) -> None:
        """Write the current configuration to the file.

        Failures are logged; a config that cannot be saved stays usable in
        memory.
        """
        with self._lock:
            payload = asdict(self._config)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            logger.debug(f"Saved config to {self._path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self._path}: {e}")

    def _update(self, **changes: Any) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(self._config, name, value)
        self.save()

    def set_server_url(self, url: str) -> None:
        if not url:
            raise ValueError("server_url must not be empty")
        self._update(server_url=url)

    def set_working_directory(self, directory: str) -> None:
        self._update(working_directory=directory)

    def set_last_session_id(self, session_id: Optional[str]) -> None:
        self._update(last_session_id=session_id)

    def set_pause_enabled(self, enabled: bool) -> None:
        self._update(pause_enabled=enabled)

    def set_auto_reconnect(self, enabled: bool) -> None:
        self._update(auto_reconnect=enabled)


__all__ = [
    "ClientConfig",
    "ConfigManager",
    "ENV_VAR_MAPPING",
    "get_user_config_path",
    "load_client_config",
]
