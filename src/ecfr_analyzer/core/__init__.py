"""
Core building blocks: configuration, parsing, compression and text analysis.
"""

from .compression_engine import CompressionEngine, CompressionError
from .config_manager import ConfigurationError, ConfigurationManager
from .environment_manager import EnvironmentManager
from .rate_limiter import RateLimiter, get_shared_rate_limiter
from .xml_parser import TitleXMLParser, parse_title_xml
from .yaml_parser import YAMLConfigParser

__all__ = [
    # Configuration management
    "ConfigurationManager",
    "ConfigurationError",
    "YAMLConfigParser",
    "EnvironmentManager",
    # Content handling
    "CompressionEngine",
    "CompressionError",
    "TitleXMLParser",
    "parse_title_xml",
    # Throttling
    "RateLimiter",
    "get_shared_rate_limiter",
]
