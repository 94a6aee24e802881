#!/usr/bin/env python3
"""
Configuration management for Rivulet.

This module centralizes logging setup and configuration loading. Values come
from (in increasing priority) built-in defaults, the YAML config file, a .env
file next to this module and the process environment.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ConfigError


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: include timestamps in log lines (default true)

    All modules should use get_logger() so their loggers inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # aiohttp and playwright are chatty at DEBUG
    for name in ("aiohttp", "asyncio", "playwright"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("Rivulet")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "scraper", "daemon")

    Returns:
        A logger named "Rivulet.{name}"
    """
    return getLogger(f"Rivulet.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for Rivulet.

    Loading order:
    1. rivulet.yaml (or the file named by RIVULET_CONFIG)
    2. .env file (never overrides variables already set)
    3. Environment variables

    Example rivulet.yaml:
    ```yaml
    fetch:
      workers: 10
      timeout: 10
    daemon:
      interval: "1h"
      update_on_start: true
    scraper:
      enabled: true
      max_concurrency: 5
      content_selectors: ["article", "main"]
    ```
    """

    def __init__(self):
        self._load_environment()
        self._load_config_file()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from a .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1, file_value: Any = None) -> int:
        """Validate and parse a positive integer from the environment, then the config file."""
        raw = environ.get(env_var)
        if raw is None:
            raw = file_value if file_value is not None else default
        try:
            value = int(raw)
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _section(self, name: str) -> Dict[str, Any]:
        value = self.FILE_SETTINGS.get(name)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ConfigError(f"Section '{name}' in {self.CONFIG_PATH} must be a mapping")
        return value

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))
        fetch_section = self._section('fetch')
        daemon_section = self._section('daemon')

        # Paths
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_PATH, "rivulet.db"))
        self.PID_FILE = environ.get("PID_FILE", path.join(self.DATA_PATH, "rivulet.pid"))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")

        # HTTP fetching
        self.USER_AGENT = environ.get("USER_AGENT", "rivulet/0.1.0")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 10, 1, fetch_section.get('timeout'))
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.FETCH_WORKERS = self._validate_positive_int("FETCH_WORKERS", 10, 1, fetch_section.get('workers'))

        # Daemon; the interval string is parsed (and rejected) by the scheduler
        self.DAEMON_INTERVAL = str(environ.get("DAEMON_INTERVAL", daemon_section.get('interval', "1h")))
        update_on_start = environ.get("DAEMON_UPDATE_ON_START", str(daemon_section.get('update_on_start', True)))
        self.DAEMON_UPDATE_ON_START = update_on_start.lower() == "true"

        # Scraper; the raw mapping is turned into a ScraperConfig by scraper.py
        self.SCRAPER_SETTINGS = dict(self._section('scraper'))
        scraper_enabled = environ.get("SCRAPER_ENABLED")
        if scraper_enabled is not None:
            self.SCRAPER_SETTINGS['enabled'] = scraper_enabled.lower() == "true"

    def _load_config_file(self) -> None:
        """Populate self.FILE_SETTINGS from the YAML config file.

        A missing file is fine (defaults apply); an unreadable or malformed one is not.
        """
        base_dir = path.dirname(path.abspath(__file__))
        self.CONFIG_PATH = environ.get("RIVULET_CONFIG", path.join(base_dir, "rivulet.yaml"))
        self.FILE_SETTINGS = {}

        if not path.isfile(self.CONFIG_PATH):
            logger.debug(f"Config file not found at {self.CONFIG_PATH}; using defaults")
            return
        if not access(self.CONFIG_PATH, R_OK):
            raise ConfigError(f"No read permission for config file at {self.CONFIG_PATH}")

        max_size = 1024 * 1024
        size = path.getsize(self.CONFIG_PATH)
        if size > max_size:
            raise ConfigError(f"Config file too large: {size} bytes (limit: {max_size} bytes)")

        try:
            with open(self.CONFIG_PATH, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing YAML in {self.CONFIG_PATH}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"{self.CONFIG_PATH} must be a YAML mapping at the top level")
        self.FILE_SETTINGS = data
        logger.info(f"Loaded configuration from {self.CONFIG_PATH}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "config_path": self.CONFIG_PATH,
            "database_path": self.DATABASE_PATH,
            "pid_file": self.PID_FILE,
            "http_timeout": self.HTTP_TIMEOUT,
            "fetch_workers": self.FETCH_WORKERS,
            "daemon_interval": self.DAEMON_INTERVAL,
            "daemon_update_on_start": self.DAEMON_UPDATE_ON_START,
            "scraper_enabled": self.SCRAPER_SETTINGS.get('enabled', True),
        }


# Global configuration instance
config = Config()
