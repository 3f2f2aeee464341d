"""
eCFR Analyzer - Code of Federal Regulations ingest and analytics engine

Downloads CFR titles, decomposes them into hierarchy documents stored in
MongoDB, keeps an Elasticsearch index in sync and runs background analytics
workers over the stored text.
"""

__version__ = "1.0.0"

from .core.config_manager import ConfigurationManager
from .models.config_models import AnalyzerConfig

__all__ = [
    "ConfigurationManager",
    "AnalyzerConfig",
]
