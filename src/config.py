"""
Configuration for the charging-station Q&A pipeline.

Sections are plain dataclasses with safe defaults. A JSON file (config/system_config.json,
or the path in CHARGEQA_CONFIG) may override any field; CHARGEQA_* environment
variables are applied last.
"""

import os
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _flag(v: str) -> bool:
    return str(v).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class StoreConfig:
    """Connection and execution limits for the relational store."""
    url: Optional[str] = None           # sqlite path, sqlite:///..., mssql://... or an ODBC string
    odbc_driver: str = "ODBC Driver 17 for SQL Server"
    query_timeout_seconds: int = 25
    connect_timeout_seconds: int = 15
    # Derive validity windows from the stored data instead of the catalog
    store_validity_windows: bool = False
    validity_ttl_seconds: int = 3600


@dataclass
class LLMConfig:
    """Model fallback settings. The OpenAI SDK talks to any compatible endpoint."""
    enabled: bool = True
    model: str = "deepseek-chat"
    base_url: str = "https://api.deepseek.com/v1"
    api_key_env: str = "DEEPSEEK_API_KEY"
    temperature: float = 0.1
    max_tokens: int = 1000
    timeout_seconds: int = 20


@dataclass
class PlannerConfig:
    # Rows shown before the formatter truncates a table
    max_display_rows: int = 20
    # Questions with these cues go to the model even when a source is resolved
    model_only_cues: tuple = ('占比', '比例', '分布', '趋势', '原因', '为什么', '预测')


@dataclass
class SystemConfig:
    store: StoreConfig
    llm: LLMConfig
    planner: PlannerConfig

    environment: str = "development"

    def __init__(self):
        self.store = StoreConfig()
        self.llm = LLMConfig()
        self.planner = PlannerConfig()
        self.environment = "development"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'store': asdict(self.store),
            'llm': asdict(self.llm),
            'planner': asdict(self.planner),
            'environment': self.environment,
        }


class ConfigManager:
    """Loads configuration from file and applies environment overrides."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv('CHARGEQA_CONFIG', 'config/system_config.json')
        self.config = SystemConfig()
        self._load_config()
        self._apply_environment_overrides()

    def _load_config(self):
        if not os.path.exists(self.config_path):
            logger.info("No config file found, using defaults")
            return
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_dict = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load config from {self.config_path}: {e}")
            logger.info("Using default configuration")
            return
        self._update_config_from_dict(config_dict)
        logger.info(f"Loaded configuration from {self.config_path}")

    def _update_config_from_dict(self, config_dict: Dict[str, Any]):
        for section_name, section_config in config_dict.items():
            if section_name == 'environment':
                self.config.environment = str(section_config)
                continue
            if not hasattr(self.config, section_name) or not isinstance(section_config, dict):
                logger.warning(f"Unknown config section ignored: {section_name}")
                continue
            section = getattr(self.config, section_name)
            for key, value in section_config.items():
                if hasattr(section, key):
                    if key == 'model_only_cues' and isinstance(value, list):
                        value = tuple(value)
                    setattr(section, key, value)
                else:
                    logger.warning(f"Unknown config key ignored: {section_name}.{key}")

    def _apply_environment_overrides(self):
        self.config.environment = os.getenv('CHARGEQA_ENV', self.config.environment)

        env_overrides = {
            'CHARGEQA_DB_URL': ('store', 'url', str),
            'CHARGEQA_QUERY_TIMEOUT': ('store', 'query_timeout_seconds', int),
            'CHARGEQA_STORE_VALIDITY': ('store', 'store_validity_windows', _flag),
            'CHARGEQA_VALIDITY_TTL': ('store', 'validity_ttl_seconds', int),
            'CHARGEQA_LLM_ENABLED': ('llm', 'enabled', _flag),
            'CHARGEQA_LLM_MODEL': ('llm', 'model', str),
            'CHARGEQA_LLM_BASE_URL': ('llm', 'base_url', str),
            'CHARGEQA_LLM_TIMEOUT': ('llm', 'timeout_seconds', int),
        }

        for env_var, (section, key, type_func) in env_overrides.items():
            if env_var in os.environ:
                try:
                    value = type_func(os.environ[env_var])
                    setattr(getattr(self.config, section), key, value)
                    logger.info(f"Applied environment override: {env_var} = {value}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"Invalid environment override {env_var}: {e}")

    def validate_config(self) -> bool:
        issues = []
        if self.config.store.query_timeout_seconds <= 0:
            issues.append("Store query timeout must be positive")
        if self.config.llm.timeout_seconds <= 0:
            issues.append("Model timeout must be positive")
        if self.config.store.validity_ttl_seconds < 0:
            issues.append("Validity window TTL must not be negative")
        if not 0.0 <= float(self.config.llm.temperature) <= 2.0:
            issues.append("Model temperature out of range [0, 2]")

        for issue in issues:
            logger.warning(f"Config validation issue: {issue}")
        return not issues


# Global configuration instance
_config_manager = None


def get_config() -> SystemConfig:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
        if not _config_manager.validate_config():
            logger.warning("Configuration validation failed - some settings may be suboptimal")
    return _config_manager.config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config_manager
    _config_manager = None
