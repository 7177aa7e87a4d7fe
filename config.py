#!/usr/bin/env python3
"""
Configuration management for the news aggregator.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the tabs/sources file and scoring tables,
and provides a clean interface for accessing configuration values throughout
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
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
        force=True  # Force reconfiguration if already configured
    )

    # pytest swaps stdout for a capture object that may not support reconfigure()
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(line_buffering=True)

    # aiohttp access logs are noisy at INFO when the proxy is busy
    getLogger("aiohttp.access").setLevel(max(level, WARNING))

    return getLogger("NewsAggregator")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "proxy", "parser", "orchestrator")

    Returns:
        A logger named "NewsAggregator.{name}"
    """
    return getLogger(f"NewsAggregator.{name}")

# Create single global logger instance
logger = _setup_global_logger()


# Built-in scoring tables, used when tabs.yaml has no scoring section
DEFAULT_SOURCE_WEIGHTS: Dict[str, int] = {
    "CBC Montreal": 15,
    "Radio-Canada Montréal": 15,
    "La Presse": 12,
    "Le Devoir": 12,
    "Montreal Gazette": 10,
    "CTV News Montreal": 10,
    "Journal de Montréal": 10,
}
DEFAULT_IMPORTANT_CATEGORIES: List[str] = [
    "breaking", "breaking news", "actualité", "politique", "politics", "santé", "health",
]
DEFAULT_IMPORTANT_KEYWORDS: List[str] = [
    "urgent", "breaking", "exclusive", "important", "major", "exclusif",
]
DEFAULT_CATEGORY_EQUIVALENTS: Dict[str, List[str]] = {
    "food": ["nourriture", "alimentation", "cuisine"],
    "health": ["santé", "sante"],
    "sports": ["sport"],
    "politics": ["politique"],
    "technology": ["technologie"],
    "business": ["affaires", "économie", "economie"],
}


class Config:
    """Configuration manager for the news aggregator.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. tabs.yaml (tabs, their sources, and scoring tables)
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_tabs()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _flag(self, env_var: str, default: bool) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Runtime environment: NODE_ENV is honoured for deployments shared with the web frontend
        self.ENVIRONMENT = (environ.get("ENVIRONMENT") or environ.get("NODE_ENV") or "production").strip().lower()
        self.DEVELOPMENT = self.ENVIRONMENT == "development"

        # Proxy server
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._validate_positive_int("PORT", 3072, 1)
        self.ALLOWED_ORIGINS = [
            origin.strip().rstrip("/")
            for origin in environ.get("ALLOWED_ORIGINS", "").split(",")
            if origin.strip()
        ]
        self.TRUST_PROXY = self._flag("TRUST_PROXY", False)

        # Rate limiting (per client IP, sliding window)
        self.RATE_LIMIT_WINDOW_MINUTES = self._validate_positive_int("RATE_LIMIT_WINDOW_MINUTES", 15, 1)
        self.RATE_LIMIT_MAX_REQUESTS = self._validate_positive_int("RATE_LIMIT_MAX_REQUESTS", 500, 1)

        # Origin fetches
        self.PROXY_FETCH_TIMEOUT = self._validate_positive_float("PROXY_FETCH_TIMEOUT", 10.0, 1.0)
        self.PROXY_MAX_RETRIES = self._validate_positive_int("PROXY_MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.MAX_URL_LENGTH = self._validate_positive_int("MAX_URL_LENGTH", 2048, 64)
        self.DISCOVERY_TIMEOUT = self._validate_positive_float("DISCOVERY_TIMEOUT", 5.0, 1.0)
        self.CHARSET_UTF8_OVERRIDE = self._flag("CHARSET_UTF8_OVERRIDE", True)

        # Per-source client
        self.PROXY_BASE_URL = environ.get("PROXY_BASE_URL", "").strip().rstrip("/")
        self.CLIENT_TIMEOUT = self._validate_positive_float("CLIENT_TIMEOUT", 35.0, 1.0)
        self.RATE_LIMIT_BACKOFF_SECONDS = self._validate_positive_float("RATE_LIMIT_BACKOFF_SECONDS", 60.0, 0.0)
        self.RATE_LIMIT_RETRIES = self._validate_positive_int("RATE_LIMIT_RETRIES", 1, 0)

        # Parsing and aggregation
        self.TIME_WINDOW_HOURS = self._validate_positive_int("TIME_WINDOW_HOURS", 24, 1)
        self.DESCRIPTION_MAX_LENGTH = self._validate_positive_int("DESCRIPTION_MAX_LENGTH", 500, 50)

        # Orchestration
        self.AUTO_REFRESH_MINUTES = self._validate_positive_float("AUTO_REFRESH_MINUTES", 5.0, 0.1)
        self.NEW_ARTICLE_HIGHLIGHT_SECONDS = self._validate_positive_float("NEW_ARTICLE_HIGHLIGHT_SECONDS", 3.0, 0.0)
        self.FAILURE_NOTICE_DEBOUNCE_SECONDS = self._validate_positive_float("FAILURE_NOTICE_DEBOUNCE_SECONDS", 2.0, 0.0)

        base_dir = path.dirname(path.abspath(__file__))
        self.CACHE_PATH = environ.get("CACHE_PATH", path.join(base_dir, "news_cache.db"))
        self.TABS_CONFIG_PATH = environ.get("TABS_CONFIG_PATH", path.join(base_dir, "tabs.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under ``environment`` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'tabs')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_tabs(self) -> None:
        """Populate TABS and the scoring tables from tabs.yaml.

        Any failure results in no tabs and the built-in scoring tables.
        """
        self.TABS: Dict[str, Dict[str, Any]] = {}
        self.DEFAULT_SOURCE_WEIGHT = 5
        self.SOURCE_WEIGHTS = dict(DEFAULT_SOURCE_WEIGHTS)
        self.IMPORTANT_CATEGORIES = list(DEFAULT_IMPORTANT_CATEGORIES)
        self.IMPORTANT_KEYWORDS = list(DEFAULT_IMPORTANT_KEYWORDS)
        self.CATEGORY_EQUIVALENTS = {k: list(v) for k, v in DEFAULT_CATEGORY_EQUIVALENTS.items()}

        tabs_path = self.TABS_CONFIG_PATH
        config_data = self._safe_read_yaml(tabs_path, 5 * 1024 * 1024, 'tabs')
        if not isinstance(config_data, dict):
            return

        scoring = config_data.get('scoring')
        if isinstance(scoring, dict):
            self._load_scoring(scoring, tabs_path)

        tabs_section = config_data.get('tabs')
        if not isinstance(tabs_section, dict):
            logger.warning(f"No valid tabs found in {tabs_path}")
            return

        for tab_id, tab_cfg in tabs_section.items():
            if not isinstance(tab_cfg, dict) or not isinstance(tab_cfg.get('sources'), list):
                logger.warning(f"Skipping invalid tab configuration for '{tab_id}'")
                continue
            sources = []
            for entry in tab_cfg['sources']:
                if isinstance(entry, dict) and entry.get('name') and entry.get('url'):
                    sources.append(entry)
                else:
                    logger.warning(f"Skipping invalid source in tab '{tab_id}': {entry}")
            self.TABS[str(tab_id)] = {"name": tab_cfg.get('name') or str(tab_id), "sources": sources}
            logger.debug(f"Loaded tab {tab_id} with {len(sources)} sources")

        logger.info(f"Loaded {len(self.TABS)} tabs from {tabs_path}")

    def _load_scoring(self, scoring: Dict[str, Any], tabs_path: str) -> None:
        weight = scoring.get('default_source_weight')
        if weight is not None:
            try:
                self.DEFAULT_SOURCE_WEIGHT = int(weight)
            except (TypeError, ValueError):
                logger.warning(f"Invalid default_source_weight '{weight}' in {tabs_path}; using 5")

        weights = scoring.get('source_weights')
        if isinstance(weights, dict):
            parsed = {}
            for name, value in weights.items():
                try:
                    parsed[str(name)] = int(value)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid weight for source '{name}' in {tabs_path}")
            self.SOURCE_WEIGHTS = parsed

        for key, attr in (('important_categories', 'IMPORTANT_CATEGORIES'),
                          ('important_keywords', 'IMPORTANT_KEYWORDS')):
            values = scoring.get(key)
            if isinstance(values, list):
                setattr(self, attr, [str(v).lower() for v in values if v])

        equivalents = scoring.get('category_equivalents')
        if isinstance(equivalents, dict):
            self.CATEGORY_EQUIVALENTS = {
                str(k).lower(): [str(v).lower() for v in (vals or [])]
                for k, vals in equivalents.items()
            }

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "environment": self.ENVIRONMENT,
            "port": self.PORT,
            "allowed_origins": len(self.ALLOWED_ORIGINS),
            "rate_limit": f"{self.RATE_LIMIT_MAX_REQUESTS}/{self.RATE_LIMIT_WINDOW_MINUTES}m",
            "proxy_fetch_timeout": self.PROXY_FETCH_TIMEOUT,
            "proxy_max_retries": self.PROXY_MAX_RETRIES,
            "proxy_base_url": self.PROXY_BASE_URL or "<in-process>",
            "time_window_hours": self.TIME_WINDOW_HOURS,
            "tab_count": len(self.TABS),
            "cache_path": self.CACHE_PATH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
