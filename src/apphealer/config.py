"""Configuration loading and management for AppHealer."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from apphealer.models import HealerConfig, HealingConfig, Target, TargetConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".apphealer"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "apphealer.yaml"
DEFAULT_TARGETS_DIR = DEFAULT_CONFIG_DIR / "targets"  # one file per target
DEFAULT_DB_FILE = DEFAULT_CONFIG_DIR / "apphealer.db"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"

_TARGET_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir() -> Path:
    """Ensure the config directory exists."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DEFAULT_LOGS_DIR.mkdir(parents=True, exist_ok=True)
    DEFAULT_TARGETS_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_CONFIG_DIR


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - ${VAR_NAME:-default} - environment variable with a fallback
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)

    def replace_default(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1)) or match.group(2)

    value = re.sub(r"\$\{(\w+):-([^}]*)\}", replace_default, value)

    return os.path.expandvars(value)


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    return expand_env_vars(os.path.expanduser(path))


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> HealerConfig:
    """Load the main AppHealer configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return HealerConfig()

    data = load_yaml_file(path)

    try:
        config = HealerConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    config.executor.backup_dir = expand_path(config.executor.backup_dir) or config.executor.backup_dir
    if config.database:
        config.database = expand_path(config.database)
    if config.daemon.log_file:
        config.daemon.log_file = expand_path(config.daemon.log_file)
    return config


def load_targets(
    targets_path: Path | None = None,
    defaults: HealingConfig | None = None,
) -> dict[str, Target]:
    """Load targets from the targets/ directory.

    Each target is stored in its own file: targets/{target_id}.yaml.
    The target id is derived from the filename.

    Args:
        targets_path: Optional path to the targets directory
        defaults: Healing defaults applied where a target leaves a field unset

    Returns:
        Mapping of target id to Target
    """
    targets_dir = targets_path or DEFAULT_TARGETS_DIR

    if not targets_dir.is_dir():
        logger.warning(f"Targets directory not found at {targets_dir}")
        return {}

    targets: dict[str, Target] = {}

    for target_file in sorted(targets_dir.glob("*.yaml")):
        target_id = target_file.stem
        if not _TARGET_ID_RE.match(target_id):
            raise ConfigError(f"Invalid target id '{target_id}' in {target_file}")

        data = load_yaml_file(target_file)
        for key in ("path", "url", "db_check_command"):
            if isinstance(data.get(key), str):
                data[key] = expand_env_vars(data[key])
        if "path" in data:
            data["path"] = expand_path(data["path"])

        try:
            config = TargetConfig.model_validate(data)
        except Exception as e:
            raise ConfigError(f"Invalid target file {target_file}: {e}") from e

        targets[target_id] = Target.from_config(target_id, config, defaults)

    logger.debug(f"Loaded {len(targets)} targets from {targets_dir}")
    return targets


def save_target(
    target_id: str,
    target_config: dict | TargetConfig,
    targets_path: Path | None = None,
) -> Path:
    """Save a single target to its own file."""
    if not _TARGET_ID_RE.match(target_id):
        raise ConfigError(f"Invalid target id '{target_id}'")

    targets_dir = targets_path or DEFAULT_TARGETS_DIR
    targets_dir.mkdir(parents=True, exist_ok=True)

    if isinstance(target_config, TargetConfig):
        data = target_config.model_dump(mode="json", exclude_none=True)
    else:
        data = dict(target_config)

    target_file = targets_dir / f"{target_id}.yaml"
    with open(target_file, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    logger.debug(f"Saved target '{target_id}' to {target_file}")
    return target_file


def create_default_config() -> None:
    """Create default configuration files if they don't exist."""
    ensure_config_dir()

    if not DEFAULT_CONFIG_FILE.exists():
        config = HealerConfig()
        with open(DEFAULT_CONFIG_FILE, "w") as f:
            yaml.safe_dump(
                config.model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )
        logger.info(f"Created default config at {DEFAULT_CONFIG_FILE}")

    if not list(DEFAULT_TARGETS_DIR.glob("*.yaml")):
        example = {
            "name": "Example Site",
            "path": "/var/www/example",
            "url": "https://example.com",
            "enabled": False,
            "healing_mode": "manual",
            "log_paths": ["wp-content/debug.log"],
            "db_check_command": "wp db check",
        }
        example_file = DEFAULT_TARGETS_DIR / "example-site.yaml"
        with open(example_file, "w") as f:
            yaml.dump(example, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        logger.info(f"Created example target at {example_file}")
