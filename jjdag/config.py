"""Configuration loader."""

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from jjdag.errors import ConfigError

DEFAULT_JJ_BIN = "jj"
DEFAULT_WORKSPACE_NAME = "default"
DEFAULT_STORE_PATH = Path("workspace_store") / "index"
DEFAULT_DELETE_FORGOTTEN = True

logger = logging.getLogger(__name__)


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DebugConfig:
    """Debug configuration."""

    enabled: bool = False

    @classmethod
    def from_env(cls) -> "DebugConfig":
        """Load debug config from environment variable."""
        return cls(enabled=_truthy(os.environ.get("JJDAG_DEBUG", "")))


@dataclass
class Config:
    """jjdag configuration."""

    jj_bin: str = DEFAULT_JJ_BIN
    log_dir: Optional[Path] = None
    store_path: Path = DEFAULT_STORE_PATH
    delete_forgotten: bool = DEFAULT_DELETE_FORGOTTEN
    default_workspace: str = DEFAULT_WORKSPACE_NAME
    debug: DebugConfig = field(default_factory=DebugConfig.from_env)
    config_path: Optional[Path] = None

    def store_file(self, repo_dir: Path) -> Path:
        """
        Resolve the operation store file for a repository directory.

        Args:
            repo_dir: The ``.jj/repo`` directory of the repo-hosting workspace

        Returns:
            Absolute path of the store file
        """
        if self.store_path.is_absolute():
            return self.store_path
        return repo_dir / self.store_path


def default_config_path() -> Path:
    """Location of the user config file (``$JJDAG_CONFIG`` wins)."""
    explicit = os.environ.get("JJDAG_CONFIG")
    if explicit:
        return Path(explicit)
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "jjdag" / "config"


def _parse_config_file(config_path: Path) -> dict[str, str]:
    """
    Parse INI-style config file.

    Returns:
        Dict of config values (DEFAULT keys upper-cased, others section.key)

    Raises:
        ConfigError: If the file exists but cannot be parsed
    """
    if not config_path.exists():
        return {}

    parser = configparser.ConfigParser()
    try:
        parser.read(config_path, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigError(f"Invalid config file {config_path}: {e}") from e

    config = {}

    for key, value in parser["DEFAULT"].items():
        config[key.upper()] = value

    for section in parser.sections():
        for key, value in parser[section].items():
            if key in parser.defaults():
                continue
            config[f"{section}.{key}"] = value

    return config


def get_config(config_path: Optional[Path] = None) -> Config:
    """
    Get current configuration.

    Resolves from:
    1. Config file ($JJDAG_CONFIG or $XDG_CONFIG_HOME/jjdag/config)
    2. Environment variables (override the file)

    Returns:
        Config object

    Raises:
        ConfigError: If the config file is malformed
    """
    if config_path is None:
        config_path = default_config_path()
    file_config = _parse_config_file(config_path)

    jj_bin = os.environ.get("JJDAG_JJ_BIN") or file_config.get("JJ_BIN") or DEFAULT_JJ_BIN

    log_dir_str = os.environ.get("JJDAG_LOG_DIR") or file_config.get("LOG_DIR")
    log_dir = Path(log_dir_str).expanduser() if log_dir_str else None

    store_path_str = os.environ.get("JJDAG_STORE_PATH") or file_config.get("STORE_PATH")
    store_path = Path(store_path_str) if store_path_str else DEFAULT_STORE_PATH

    delete_forgotten = DEFAULT_DELETE_FORGOTTEN
    delete_str = os.environ.get("JJDAG_DELETE_FORGOTTEN") or file_config.get("DELETE_FORGOTTEN")
    if delete_str:
        if delete_str.strip().lower() in ("1", "true", "yes", "on", "0", "false", "no", "off"):
            delete_forgotten = _truthy(delete_str)
        else:
            logger.warning(
                f"Invalid DELETE_FORGOTTEN value {delete_str!r}, "
                f"using default: {DEFAULT_DELETE_FORGOTTEN}"
            )

    default_workspace = file_config.get("DEFAULT_WORKSPACE") or DEFAULT_WORKSPACE_NAME
    if "/" in default_workspace or default_workspace in (".", ".."):
        logger.warning(
            f"Invalid DEFAULT_WORKSPACE value {default_workspace!r}, "
            f"using default: {DEFAULT_WORKSPACE_NAME}"
        )
        default_workspace = DEFAULT_WORKSPACE_NAME

    logger.debug(f"Config file: {config_path}")
    logger.debug(f"jj binary: {jj_bin}")
    logger.debug(f"Log dir: {log_dir}")
    logger.debug(f"Store path: {store_path}")
    logger.debug(f"Delete forgotten workspaces: {delete_forgotten}")

    return Config(
        jj_bin=jj_bin,
        log_dir=log_dir,
        store_path=store_path,
        delete_forgotten=delete_forgotten,
        default_workspace=default_workspace,
        config_path=config_path,
    )
