"""
Environment configuration and validation utilities.

Loads the .env file and exposes the secrets and connection settings that do not
belong in the JSON config: model API key and SQL Server credentials.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class EnvironmentConfig:
    """Manages environment configuration and validation."""

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize environment configuration.

        Args:
            env_file: Path to .env file (defaults to project root/.env)
        """
        if env_file is None:
            project_root = Path(__file__).parent.parent.parent
            env_file = project_root / ".env"

        if os.path.exists(env_file):
            load_dotenv(env_file)
            logger.info(f"Loaded environment from {env_file}")
        else:
            logger.debug(f"Environment file not found: {env_file}")

        self.config = self._load_config()
        self._validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        return {
            # API keys
            'deepseek_api_key': os.getenv('DEEPSEEK_API_KEY'),

            # SQL Server
            'db_server': os.getenv('DB_SERVER'),
            'db_user': os.getenv('DB_USER'),
            'db_password': os.getenv('DB_PASSWORD'),
            'db_database': os.getenv('DB_DATABASE'),
            'db_port': os.getenv('DB_PORT', '1433'),

            # System settings
            'log_level': os.getenv('LOG_LEVEL', 'INFO'),
        }

    def _validate_config(self):
        """Log warnings for missing keys."""
        warnings = []

        if not self.config['deepseek_api_key']:
            warnings.append("DEEPSEEK_API_KEY not found - model fallback disabled")
        if not self.config['db_server']:
            warnings.append("DB_SERVER not set - only CHARGEQA_DB_URL stores are reachable")

        for warning in warnings:
            logger.warning(warning)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        value = self.config.get(key)
        return default if value is None else value

    def get_model_key(self) -> Optional[str]:
        return self.config['deepseek_api_key']

    def has_sqlserver(self) -> bool:
        return bool(self.config['db_server'] and self.config['db_database'])

    def sqlserver_odbc_string(self, driver: str, connect_timeout: int = 15) -> Optional[str]:
        """ODBC connection string built from DB_* variables, or None when they are incomplete."""
        if not self.has_sqlserver():
            return None
        parts = [
            f"DRIVER={{{driver}}}",
            f"SERVER={self.config['db_server']},{self.config['db_port']}",
            f"DATABASE={self.config['db_database']}",
        ]
        if self.config['db_user']:
            parts.append(f"UID={self.config['db_user']}")
            parts.append(f"PWD={self.config['db_password'] or ''}")
        else:
            parts.append("Trusted_Connection=yes")
        parts.append("TrustServerCertificate=yes")
        parts.append(f"Connection Timeout={int(connect_timeout)}")
        return ';'.join(parts)


# Global configuration instance
_config = None


def get_config() -> EnvironmentConfig:
    """Get global configuration instance."""
    global _config
    if _config is None:
        _config = EnvironmentConfig()
    return _config


def setup_logging():
    """Setup logging based on environment configuration."""
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, str(config.get('log_level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
