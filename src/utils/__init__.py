"""
Utility modules for the charging-station Q&A pipeline.
"""

from .env_config import get_config, setup_logging, EnvironmentConfig

__all__ = ['get_config', 'setup_logging', 'EnvironmentConfig']
