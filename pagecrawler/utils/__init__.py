"""
Configuration, logging, monitoring and URL helpers.
"""

from .config import Config, ConfigManager, load_config
from .monitoring import CrawlerMonitor, MetricsCollector, initialize_monitoring
from .urls import get_domain, safe_file_name, same_domain_links, strip_fragment

__all__ = [
    'Config', 'ConfigManager', 'load_config',
    'CrawlerMonitor', 'MetricsCollector', 'initialize_monitoring',
    'get_domain', 'safe_file_name', 'same_domain_links', 'strip_fragment',
]
