"""
Monitoring and observability package.
"""

from binance_plugin.monitoring.metrics import PluginMetrics

__all__ = [
    "PluginMetrics",
]
