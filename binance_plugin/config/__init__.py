"""
Configuration package.

Environment-driven Settings for the plugin (credentials, endpoints, limits).
"""

from binance_plugin.config.config import Settings

__all__ = [
    "Settings",
]
