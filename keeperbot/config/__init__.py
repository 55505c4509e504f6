"""
Configuration package.

This package contains environment settings and the deployment file loader.
"""

from keeperbot.config.config import Settings, env_bool
from keeperbot.config.deployment import DeploymentConfig, TokenInfo, load_deployment

__all__ = [
    "Settings",
    "env_bool",
    "DeploymentConfig",
    "TokenInfo",
    "load_deployment",
]
